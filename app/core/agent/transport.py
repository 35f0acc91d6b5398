"""Transport capability descriptors.

One greeting agent / orchestrator pair serves every channel; replies are
shaped by what the channel can render.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TransportCapabilities:
    """What a conversational channel can render."""

    name: str
    supports_audio: bool = False
    supports_rich_formatting: bool = False
    max_reply_chars: Optional[int] = None

    def fit(self, text: str) -> str:
        """Trim a reply to the channel's length limit."""
        if self.max_reply_chars is None or len(text) <= self.max_reply_chars:
            return text
        return text[: self.max_reply_chars - 3].rstrip() + "..."


VOICE = TransportCapabilities(name="voice", supports_audio=True)
WHATSAPP = TransportCapabilities(name="whatsapp", supports_rich_formatting=True, max_reply_chars=4096)
SMS = TransportCapabilities(name="sms", max_reply_chars=1600)
WEB = TransportCapabilities(name="web", supports_rich_formatting=True)

TRANSPORTS: dict[str, TransportCapabilities] = {
    t.name: t for t in (VOICE, WHATSAPP, SMS, WEB)
}


def get_transport(name: Optional[str]) -> TransportCapabilities:
    """Look up a transport by name; unknown names get web capabilities."""
    return TRANSPORTS.get((name or "").strip().lower(), WEB)
