"""Listing page UI layer: locators, page adapter and state observer."""

from .observer import UIState, UIStateObserver
from .page import ActionResult, ListingPage

__all__ = ["ActionResult", "ListingPage", "UIState", "UIStateObserver"]
