"""Locators for the listing edit page, as ordered candidate probes.

Each `Locator` lists candidates in priority order; the page resolves the first
candidate that matches a visible element. Markup drifts between UI releases,
so add new candidates in front rather than editing old ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

ROW_FLOORPLANS = "Floor Plans"
ROW_FILES = "Files"
ROW_TOUR_3D = "3D Content"

TOUR_TITLE = "iGuide 3D Virtual Tour"
TOUR_DISPLAY_VALUE = "both"
TOUR_DISPLAY_LABEL = "Both (Branded + Unbranded)"


@dataclass(frozen=True)
class Candidate:
    selector: str
    text: str | None = None
    # Resolve inside the target row container instead of the whole document.
    row: bool = False

    def to_js(self) -> dict[str, Any]:
        return {"selector": self.selector, "text": self.text, "row": self.row}


@dataclass(frozen=True)
class Locator:
    name: str
    candidates: tuple[Candidate, ...]

    def to_js(self) -> list[dict[str, Any]]:
        return [c.to_js() for c in self.candidates]


def _loc(name: str, *candidates: Candidate) -> Locator:
    return Locator(name=name, candidates=tuple(candidates))


ROW_ADD_BUTTON = _loc(
    "row_add_button",
    Candidate("button.bg-primary", r"^\s*Add\s*$", row=True),
    Candidate("button", r"^\s*\+?\s*Add\s*$", row=True),
    Candidate("[role=button]", r"^\s*\+?\s*Add\s*$", row=True),
)

FROM_LINK_BUTTON = _loc(
    "from_link",
    Candidate('uc-source-btn[type="url"] button'),
    Candidate('uc-source-btn[type="url"]'),
    Candidate("button", r"from\s+link"),
)

URL_INPUT = _loc(
    "url_input",
    Candidate("uc-url-source input.uc-url-input"),
    Candidate('input[placeholder="https://"]'),
    Candidate('uc-url-source input[type="text"]'),
    Candidate('input[type="url"]'),
)

IMPORT_BUTTON = _loc(
    "import_button",
    Candidate("uc-url-source button.uc-url-upload-btn"),
    Candidate("uc-url-source button[type=submit]"),
    Candidate("button", r"^\s*import\s*$"),
)

SET_TITLES_TOGGLE = _loc(
    "set_titles",
    Candidate("label#set_titles"),
    Candidate("#set_titles"),
    Candidate('input[name="set_titles"]'),
)

COMMIT_BUTTON = _loc(
    "commit_button",
    Candidate("button", r"^\s*Add \d+ Files?\s*$"),
)

UPLOAD_MODAL = _loc(
    "upload_modal",
    Candidate("uc-file-uploader-inline"),
    Candidate("uc-modal[open]"),
    Candidate("[role=dialog]"),
    Candidate("dialog[open]"),
)

TOUR_TITLE_INPUT = _loc(
    "tour_title_input",
    Candidate("input#ContentTitle"),
    Candidate('input[name="ContentTitle"]'),
    Candidate('[role=dialog] input[placeholder*="itle"]'),
)

TOUR_LINK_INPUT = _loc(
    "tour_link_input",
    Candidate("input#Pasteyourlinkbelow"),
    Candidate('input[name="Pasteyourlinkbelow"]'),
    Candidate('[role=dialog] input[placeholder*="ink"]'),
)

TOUR_DISPLAY_SELECT = _loc(
    "tour_display_select",
    Candidate("select#DisplayType"),
    Candidate('select[name="DisplayType"]'),
)

ADD_CONTENT_BUTTON = _loc(
    "add_content_button",
    Candidate("button", r"^\s*Add Content\s*$"),
)

SAVE_BUTTON = _loc(
    "save_button",
    Candidate("button", r"^\s*save\s*$"),
    Candidate('button[type="submit"]', r"save"),
)

DELIVER_BUTTON = _loc(
    "deliver_button",
    Candidate("button", r"^\s*(re-)?deliver listing\s*$"),
    Candidate("a", r"^\s*(re-)?deliver listing\s*$"),
)

DELIVER_CONFIRM_BUTTON = _loc(
    "deliver_confirm",
    Candidate("div.shadow-xl button", r"^\s*deliver\s*$"),
    Candidate("[role=dialog] button", r"^\s*deliver\s*$"),
)

LOGGED_IN_INDICATOR = _loc(
    "logged_in",
    Candidate('[class*="user-menu"]'),
    Candidate('[data-testid="user-menu"]'),
    Candidate('[class*="avatar"]'),
    Candidate('nav a[href*="/listings"]'),
)

LOGIN_FORM = _loc(
    "login_form",
    Candidate('input[type="password"]'),
)

ROW_HEADING_SELECTOR = 'span.text-heading, h2, h3, h4, [class*="heading"]'
ROW_CONTAINER_SELECTORS = ('div[data-draggable="true"]', "section", "li")
ROW_ITEM_SELECTOR = '[data-item-id], li, img, [class*="thumbnail"], [class*="file-name"]'

LOGIN_URL_MARKERS = ("/login", "/auth", "/sign-in", "/signin")

__all__ = [
    "ADD_CONTENT_BUTTON",
    "COMMIT_BUTTON",
    "DELIVER_BUTTON",
    "DELIVER_CONFIRM_BUTTON",
    "FROM_LINK_BUTTON",
    "IMPORT_BUTTON",
    "LOGGED_IN_INDICATOR",
    "LOGIN_FORM",
    "LOGIN_URL_MARKERS",
    "ROW_ADD_BUTTON",
    "ROW_FILES",
    "ROW_FLOORPLANS",
    "ROW_TOUR_3D",
    "SAVE_BUTTON",
    "SET_TITLES_TOGGLE",
    "TOUR_DISPLAY_LABEL",
    "TOUR_DISPLAY_SELECT",
    "TOUR_DISPLAY_VALUE",
    "TOUR_LINK_INPUT",
    "TOUR_TITLE",
    "TOUR_TITLE_INPUT",
    "UPLOAD_MODAL",
    "URL_INPUT",
    "Candidate",
    "Locator",
]
