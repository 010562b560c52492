"""Single-use session handoff codes."""

from sessionrelay.handoff.service import HandoffCodeService, IssuedHandoffCode

__all__ = ["HandoffCodeService", "IssuedHandoffCode"]
