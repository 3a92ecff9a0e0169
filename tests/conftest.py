from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from runners.listing_delivery.dedup import extract_decoded_filename
from runners.listing_delivery.ui import locators as L
from runners.listing_delivery.ui.page import ActionResult, match_names


class FakeClock:
    """Advances instantly; every sleep is recorded."""

    def __init__(self, start: float = 1000.0) -> None:
        self.t = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.t += seconds


class FakePage:
    """Scripted stand-in for ListingPage.

    Everything is visible and enabled unless listed in `hidden` / `disabled`.
    Committing an import appends the URL's filename to the row whose Add
    button was clicked last; "Add Content" appends the tour title.
    """

    def __init__(self) -> None:
        self.url = "https://app.aryeo.com/admin/listings/abc123/edit"
        self.rows: dict[str, list[str]] = {L.ROW_FLOORPLANS: [], L.ROW_FILES: [], L.ROW_TOUR_3D: []}
        self.hidden: set[str] = set()
        self.disabled: set[str] = set()
        self.values: dict[str, str] = {}
        self.checked: dict[str, bool] = {L.SET_TITLES_TOGGLE.name: False}
        self.signals: dict[str, Any] = {"commitVisible": True, "commitEnabled": True}
        self.signals_fn: Callable[[FakePage], dict[str, Any]] | None = None
        self.on_commit: Callable[[FakePage], None] | None = None
        self.fill_transform: Callable[[str, bool], str] | None = None
        self.login_redirect = False
        self.nav_error: str | None = None
        self.current_row: str | None = None
        self.calls: list[tuple[str, str]] = []

    # Navigation

    def navigate(self, url: str) -> ActionResult:
        self.calls.append(("navigate", url))
        if self.nav_error:
            return ActionResult.failure(self.nav_error)
        if self.login_redirect:
            self.url = "https://app.aryeo.com/login"
        else:
            self.url = url
        return ActionResult.success(url=url)

    def reload(self) -> ActionResult:
        self.calls.append(("reload", self.url))
        return ActionResult.success(loaded=True)

    def current_url(self) -> str:
        return self.url

    def on_login_page(self) -> bool:
        return any(marker in self.url for marker in L.LOGIN_URL_MARKERS)

    # Probes

    def probe(self, locator: L.Locator, row: str | None = None, *, scroll: bool = False) -> dict[str, Any] | None:
        if locator.name in self.hidden:
            return None
        return {
            "found": True,
            "enabled": locator.name not in self.disabled,
            "value": self.values.get(locator.name),
            "checked": self.checked.get(locator.name),
            "x": 10,
            "y": 10,
        }

    def is_visible(self, locator: L.Locator, row: str | None = None) -> bool:
        return self.probe(locator, row) is not None

    def read_value(self, locator: L.Locator) -> str | None:
        res = self.probe(locator)
        return None if res is None else res.get("value")

    def is_checked(self, locator: L.Locator) -> bool | None:
        res = self.probe(locator)
        return None if res is None else res.get("checked")

    def ui_signals(self, commit: L.Locator) -> dict[str, Any]:
        if self.signals_fn is not None:
            return self.signals_fn(self)
        return dict(self.signals)

    def row_state(self, row: str, needles: list[str] | None = None) -> dict[str, Any]:
        if row not in self.rows:
            return {"found": False, "count": 0, "matches": []}
        return {"found": True, "count": len(self.rows[row]), "matches": match_names(self.rows[row], list(needles or []))}

    def row_count(self, row: str) -> int | None:
        state = self.row_state(row)
        return state["count"] if state["found"] else None

    def row_contains(self, row: str, needles: list[str]) -> bool:
        return bool(self.row_state(row, needles)["matches"])

    # Actions

    def click(self, locator: L.Locator, row: str | None = None) -> ActionResult:
        self.calls.append(("click", locator.name))
        if locator.name in self.hidden:
            return ActionResult.failure("not_found", locator=locator.name)
        if locator.name in self.disabled:
            return ActionResult.failure("disabled", locator=locator.name)
        if locator is L.ROW_ADD_BUTTON:
            self.current_row = row
        elif locator is L.COMMIT_BUTTON:
            if self.on_commit is not None:
                self.on_commit(self)
            elif self.current_row is not None:
                self.rows[self.current_row].append(extract_decoded_filename(self.values.get(L.URL_INPUT.name, "")))
        elif locator is L.ADD_CONTENT_BUTTON:
            self.rows[L.ROW_TOUR_3D].append(L.TOUR_TITLE)
        elif locator is L.SET_TITLES_TOGGLE:
            self.checked[locator.name] = not self.checked.get(locator.name, False)
        return ActionResult.success(locator=locator.name)

    def fill(self, locator: L.Locator, text: str, *, slow: bool = False) -> ActionResult:
        self.calls.append(("fill_slow" if slow else "fill", locator.name))
        if locator.name in self.hidden:
            return ActionResult.failure("not_found", locator=locator.name)
        self.values[locator.name] = self.fill_transform(text, slow) if self.fill_transform else text
        return ActionResult.success(locator=locator.name)

    def set_value(self, locator: L.Locator, value: str, *, label: str | None = None) -> ActionResult:
        self.calls.append(("set_value", locator.name))
        if locator.name in self.hidden:
            return ActionResult.failure("not_found", locator=locator.name)
        self.values[locator.name] = value
        return ActionResult.success(locator=locator.name, value=value)

    def set_checked(self, locator: L.Locator, checked: bool = True) -> ActionResult:
        if self.is_checked(locator) == checked:
            return ActionResult.success(locator=locator.name, changed=False)
        return self.click(locator)

    def press_key(self, key: str) -> ActionResult:
        self.calls.append(("key", key))
        return ActionResult.success(key=key)

    def screenshot_png(self) -> bytes | None:
        self.calls.append(("screenshot", ""))
        return None

    def clicks(self, name: str) -> int:
        return sum(1 for action, target in self.calls if action == "click" and target == name)


class EventSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def __call__(self, run_id: str, step: str, **kwargs: Any) -> None:
        self.events.append((run_id, step, kwargs))

    def phases(self) -> list[str]:
        return [kw["progress"]["phase"] for _, _, kw in self.events if kw.get("progress")]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def page() -> FakePage:
    return FakePage()


@pytest.fixture
def sink() -> EventSink:
    return EventSink()


@pytest.fixture
def step_ctx(page: FakePage, clock: FakeClock, sink: EventSink):  # noqa: ANN201
    from runners.listing_delivery.evidence import RunReporter
    from runners.listing_delivery.workflow.context import StepContext, WorkflowTimeouts

    reporter = RunReporter("run-1", None, sink=sink)
    return StepContext(page=page, reporter=reporter, clock=clock, timeouts=WorkflowTimeouts())
