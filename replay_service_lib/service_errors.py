from __future__ import annotations

from typing import Optional


class ReplayError(Exception):
    """Base class for every error raised by the replay service."""


class EmptyScript(ReplayError):
    def __init__(self) -> None:
        super().__init__("No recording to play back")


class PlaybackAlreadyActive(ReplayError):
    def __init__(self, state: str) -> None:
        super().__init__(f"Playback already active (state={state})")
        self.state = state


class NothingToResume(ReplayError):
    def __init__(self) -> None:
        super().__init__("No interrupted playback to resume")


class SessionBusy(ReplayError):
    """Raised when a session-level operation collides with recording or playback."""


class InvalidImportFormat(ReplayError):
    pass


class MessagingUnavailable(ReplayError):
    """The receiving context (page, frame or listener) is gone."""


class ActionSkipped(ReplayError):
    """A single action could not be applied; playback moves on."""

    reason = "skipped"

    def __init__(self, selector: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.selector = selector
        self.detail = detail
        msg = self.reason
        if selector:
            msg = f"{msg}: {selector}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class ElementNotFound(ActionSkipped):
    reason = "element not found"


class ElementNotVisible(ActionSkipped):
    reason = "element not visible"


class ElementDisabled(ActionSkipped):
    reason = "element disabled"


class NoActiveTab(ReplayError):
    def __init__(self) -> None:
        super().__init__("No browser tab available")
