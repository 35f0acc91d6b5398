"""
Agent Module

Turn handling for the booking receptionist:
- Router: Greeting-agent message classification with tool_use
- Greeting agent: Office questions and handoff decisions
- Dispatch table: Priority function catalog exposed to the decision model
- Resolver: Argument resolution from state, extraction and defaults
- Orchestrator: Plan / resolve / execute / update loop for one turn
- Dispatch: Entry point with session locking and tenant configuration
"""

from app.core.agent.router_types import RouteResult
from app.core.agent.router import MessageRouter, get_router
from app.core.agent.transport import TransportCapabilities, get_transport
from app.core.agent.tenant_config import AgentConfig, TenantConfigCache
from app.core.agent.dispatch_table import (
    DispatchConfigurationError,
    DispatchTable,
    FunctionSpec,
    ParamSpec,
    get_dispatch_table,
)
from app.core.agent.resolver import MissingRequired, ParameterResolver, ResolvedCall
from app.core.agent.orchestrator import BookingOrchestrator, TurnPhase, TurnResult
from app.core.agent.dispatch import Dispatcher, DispatchResponse, get_dispatcher

__all__ = [
    # Router
    "RouteResult",
    "MessageRouter",
    "get_router",
    # Tenant / transport
    "TransportCapabilities",
    "get_transport",
    "AgentConfig",
    "TenantConfigCache",
    # Function catalog
    "DispatchConfigurationError",
    "DispatchTable",
    "FunctionSpec",
    "ParamSpec",
    "get_dispatch_table",
    # Resolution
    "MissingRequired",
    "ParameterResolver",
    "ResolvedCall",
    # Orchestration
    "BookingOrchestrator",
    "TurnPhase",
    "TurnResult",
    # Dispatch
    "Dispatcher",
    "DispatchResponse",
    "get_dispatcher",
]
