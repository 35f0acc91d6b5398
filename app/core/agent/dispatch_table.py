"""
Function dispatch table.

A curated, typed catalog of the booking functions the orchestrator's
decision step may call. Loaded once from JSON (the bundled priority
catalog, or settings.dispatch_table_path); adding a function is a
catalog entry, not an orchestrator change.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).with_name("priority_functions.json")

ParamType = Literal["string", "integer", "number", "boolean", "date", "datetime"]

JSON_SCHEMA_TYPES = {
    "string": {"type": "string"},
    "integer": {"type": "integer"},
    "number": {"type": "number"},
    "boolean": {"type": "boolean"},
    "date": {"type": "string", "description_suffix": " (YYYY-MM-DD)"},
    "datetime": {"type": "string", "description_suffix": " (YYYY-MM-DDTHH:MM:SS)"},
}


class DispatchConfigurationError(Exception):
    """The catalog is invalid or lacks a function the orchestrator needs."""


class ParamSpec(BaseModel):
    """One function parameter."""

    name: str
    type: ParamType = "string"
    description: str = ""
    label: str = ""
    """Human wording used when asking the caller for this value."""

    default: Any = None
    """Static default for optional parameters."""

    default_from: Optional[str] = None
    """Backend-owned default policy, e.g. "first_active_operatory"."""

    extractable: bool = True
    """Whether the value may be pulled from the conversation by the LLM.
    Internal identifiers are never extractable."""

    @property
    def ask_label(self) -> str:
        return self.label or self.name.replace("_", " ")

    @property
    def has_default(self) -> bool:
        return self.default is not None or self.default_from is not None


class FunctionSpec(BaseModel):
    """A callable booking function and the backend operation behind it."""

    name: str
    category: str
    description: str
    operation: str
    required: list[ParamSpec] = Field(default_factory=list)
    optional: list[ParamSpec] = Field(default_factory=list)
    requires_any: list[str] = Field(default_factory=list)
    """At least one of these optional parameters must be present."""

    commits_booking: bool = False
    """Create/update of an appointment: needs a caller-confirmed slot."""

    action: Optional[Literal["create", "reschedule", "cancel"]] = None
    """Pending action this function completes."""

    @model_validator(mode="after")
    def _check_params(self) -> "FunctionSpec":
        names = [p.name for p in self.required + self.optional]
        if len(names) != len(set(names)):
            raise ValueError(f"{self.name}: duplicate parameter names")
        unknown = set(self.requires_any) - {p.name for p in self.optional}
        if unknown:
            raise ValueError(f"{self.name}: requires_any names unknown optional params {sorted(unknown)}")
        for param in self.required:
            if param.has_default:
                raise ValueError(f"{self.name}: required parameter {param.name} cannot have a default")
        return self

    @property
    def params(self) -> list[ParamSpec]:
        return self.required + self.optional

    def param(self, name: str) -> Optional[ParamSpec]:
        for param in self.params:
            if param.name == name:
                return param
        return None

    def to_anthropic_tool(self) -> dict:
        """Render as an Anthropic tool definition.

        Nothing is marked required in the schema: the resolver fills gaps
        from conversation state, so the model may omit what it doesn't know.
        """
        properties = {}
        for param in self.params:
            schema = JSON_SCHEMA_TYPES[param.type]
            properties[param.name] = {
                "type": schema["type"],
                "description": param.description + schema.get("description_suffix", ""),
            }
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {"type": "object", "properties": properties},
        }


class CatalogFile(BaseModel):
    functions: list[FunctionSpec]


class DispatchTable:
    """
    Read-only registry of FunctionSpecs in a stable order.

    Safe to share across sessions.
    """

    def __init__(self, specs: list[FunctionSpec]):
        names = [s.name for s in specs]
        if len(names) != len(set(names)):
            raise DispatchConfigurationError("Duplicate function names in dispatch table")
        self._specs = list(specs)
        self._by_name = {s.name: s for s in specs}

    @classmethod
    def from_file(cls, path: Path) -> "DispatchTable":
        """Load a catalog JSON file."""
        try:
            catalog = CatalogFile.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.critical(f"Invalid dispatch table {path}: {e}")
            raise DispatchConfigurationError(f"Invalid dispatch table {path}: {e}") from e
        logger.info(f"Loaded {len(catalog.functions)} functions from {path.name}")
        return cls(catalog.functions)

    def resolve_spec(self, function_name: str) -> Optional[FunctionSpec]:
        """Look up a function; None when not in the catalog."""
        return self._by_name.get(function_name)

    def require(self, function_name: str) -> FunctionSpec:
        """Look up a function the orchestrator depends on.

        Raises:
            DispatchConfigurationError: The catalog lacks it
        """
        spec = self._by_name.get(function_name)
        if spec is None:
            logger.critical(f"Dispatch table has no spec for {function_name}")
            raise DispatchConfigurationError(f"Dispatch table has no spec for {function_name}")
        return spec

    def find_by_operation(self, operation: str) -> Optional[FunctionSpec]:
        for spec in self._specs:
            if spec.operation == operation:
                return spec
        return None

    def list_available(self) -> list[FunctionSpec]:
        return list(self._specs)

    def as_anthropic_tools(self) -> list[dict]:
        return [spec.to_anthropic_tool() for spec in self._specs]

    def __contains__(self, function_name: str) -> bool:
        return function_name in self._by_name

    def __len__(self) -> int:
        return len(self._specs)


@lru_cache
def get_dispatch_table() -> DispatchTable:
    """Get the process-wide dispatch table (loaded once)."""
    path = Path(settings.dispatch_table_path) if settings.dispatch_table_path else DEFAULT_CATALOG_PATH
    return DispatchTable.from_file(path)
