from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .service_config import (
    CLICK_DEDUPE_WINDOW_S,
    CLICK_SHADOW_WINDOW_S,
    INPUT_QUIET_PERIOD_S,
    NAVIGATION_FALLBACK_S,
)

ActionType = Literal["click", "input"]
PlaybackState = Literal["idle", "starting", "awaiting_page", "executing_page", "complete", "stopped"]
NoticeKind = Literal["state", "skipped", "complete", "stopped", "error"]

AT_REST_STATES: frozenset[str] = frozenset({"idle", "complete", "stopped"})
IN_FLIGHT_STATES: frozenset[str] = frozenset({"starting", "awaiting_page", "executing_page"})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Position(_CamelModel):
    x: Optional[float] = None
    y: Optional[float] = None


class Action(_CamelModel):
    """One captured interaction. Immutable once appended to the script."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    type: ActionType
    selector: str
    tag_name: str = ""
    url: str
    timestamp: int = 0

    text: str = ""
    value: str = ""
    href: str = ""
    input_type: str = ""
    id: str = ""
    original_id: str = ""
    name: str = ""
    class_name: str = ""
    position: Optional[Position] = None

    checked: Optional[bool] = None
    selected_index: Optional[int] = None
    selected_text: Optional[str] = None

    @field_validator("selector", "url")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not str(v).strip():
            raise ValueError("must not be empty")
        return v


class ElementSnapshot(_CamelModel):
    """Plain-data view of a live element, taken in the page."""

    tag_name: str = ""
    id: str = ""
    input_type: str = ""
    value: str = ""
    text: str = ""
    href: str = ""
    name: str = ""
    class_name: str = ""
    checked: Optional[bool] = None
    selected_index: Optional[int] = None
    selected_text: Optional[str] = None
    content_editable: bool = False
    attributes: dict[str, str] = Field(default_factory=dict)
    sibling_index: int = 0
    same_tag_siblings: int = 1
    visible: bool = True
    disabled: bool = False

    @property
    def tag(self) -> str:
        return self.tag_name.lower()

    @property
    def classes(self) -> list[str]:
        return [c for c in self.class_name.split() if c.strip()]


class PlaybackProgress(_CamelModel):
    current_index: int = 0
    next_index: int = 0
    active_tab_id: Optional[str] = None
    state: PlaybackState = "idle"
    run_id: Optional[str] = None


class PlaybackTimings(BaseModel):
    """Pauses used by the executor and orchestrator, in seconds."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    scroll_settle: float = Field(default=0.3)
    disclosure_open_wait: float = Field(default=0.8)
    disclosure_poll: float = Field(default=0.1)
    click_step: float = Field(default=0.1)
    input_step: float = Field(default=0.1)

    inject_settle: float = Field(default=0.5)
    after_navigation_action: float = Field(default=2.0)
    after_disclosure: float = Field(default=1.0)
    after_input: float = Field(default=0.4)
    after_click: float = Field(default=0.6)
    navigation_fallback: float = Field(default=NAVIGATION_FALLBACK_S)


class RecorderTimings(BaseModel):
    quiet_period: float = Field(default=INPUT_QUIET_PERIOD_S)
    click_window: float = Field(default=CLICK_SHADOW_WINDOW_S)
    dedupe_window: float = Field(default=CLICK_DEDUPE_WINDOW_S)


class DisclosureProfile(BaseModel):
    """Selectors describing collapsible UI (defaults match Drupal drop buttons)."""

    toggle_selector: str = ".dropbutton__toggle"
    container_selector: str = ".dropbutton"
    open_class: str = "open"
    item_selector: str = ".secondary-action, .dropbutton__item"
    toggle_button_selector: str = ".dropbutton__toggle button"


class ExecutionOutcome(BaseModel):
    toggled_disclosure: bool = False
    disclosure_open: Optional[bool] = None


class PlaybackNotice(BaseModel):
    kind: NoticeKind
    state: PlaybackState
    run_id: Optional[str] = None
    index: Optional[int] = None
    detail: Optional[str] = None


class SessionSummary(_CamelModel):
    total_actions: int = 0
    clicks: int = 0
    inputs: int = 0
    pages: list[str] = Field(default_factory=list)

    @property
    def distinct_pages(self) -> int:
        return len(self.pages)


class ExportedSession(_CamelModel):
    version: str
    created: str = ""
    user_agent: Optional[str] = None
    actions: list[Action]
    metadata: Optional[SessionSummary] = None

    @field_validator("version", mode="before")
    @classmethod
    def _known_version(cls, v: Any) -> str:
        if v is None or isinstance(v, bool) or not str(v).strip():
            raise ValueError("version tag is required")
        major = str(v).strip().split(".", 1)[0]
        if major != "1":
            raise ValueError(f"unsupported recording version {v!r}")
        return str(v).strip()


class Status(BaseModel):
    recording: bool
    playing: bool
    playback_state: PlaybackState
    total_actions: int
    summary: SessionSummary
    progress: Optional[PlaybackProgress] = None
    stale_progress: Optional[PlaybackProgress] = None
    run_id: Optional[str] = None
    applied: int = 0
    skipped: list[str] = Field(default_factory=list)


# -------------------------------------------------------------------
# Control commands (closed set, one variant per operation)
# -------------------------------------------------------------------
class StartRecording(BaseModel):
    kind: Literal["start_recording"] = "start_recording"


class StopRecording(BaseModel):
    kind: Literal["stop_recording"] = "stop_recording"


class StartPlayback(BaseModel):
    kind: Literal["start_playback"] = "start_playback"


class StopPlayback(BaseModel):
    kind: Literal["stop_playback"] = "stop_playback"


class ResumePlayback(BaseModel):
    kind: Literal["resume_playback"] = "resume_playback"


class DiscardProgress(BaseModel):
    kind: Literal["discard_progress"] = "discard_progress"


class ClearSession(BaseModel):
    kind: Literal["clear_session"] = "clear_session"


class ExportSession(BaseModel):
    kind: Literal["export_session"] = "export_session"
    to_file: bool = False
    user_agent: Optional[str] = None


class ImportSession(BaseModel):
    kind: Literal["import_session"] = "import_session"
    document: Union[str, dict[str, Any]]


class GetStatus(BaseModel):
    kind: Literal["get_status"] = "get_status"


Command = Annotated[
    Union[
        StartRecording,
        StopRecording,
        StartPlayback,
        StopPlayback,
        ResumePlayback,
        DiscardProgress,
        ClearSession,
        ExportSession,
        ImportSession,
        GetStatus,
    ],
    Field(discriminator="kind"),
]


class CommandResult(BaseModel):
    ok: bool = True
    kind: str
    data: dict[str, Any] = Field(default_factory=dict)
