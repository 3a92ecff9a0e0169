from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from ..errors import DeliveryError

NAV = "nav"
BASELINE = "baseline"
IMPORT_FLOORPLANS = "import_floorplans"
IMPORT_FILES = "import_files"
ADD_3D = "add_3d"
SAVE = "save"
DELIVER = "deliver"
DONE = "done"
FAILED = "failed"

TERMINAL_STATES = frozenset({DONE, FAILED})

IMPORTED = "imported"
SKIPPED = "skipped"
ASSET_FAILED = "failed"


@dataclass
class ActionsPerformed:
    imported_floorplans: bool = False
    imported_rms: bool = False
    added_3d_content: bool = False
    saved: bool = False
    delivered: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ActionsPerformed:
        data = data or {}
        return cls(**{k: bool(data.get(k)) for k in cls.__dataclass_fields__})


@dataclass
class AssetOutcome:
    url: str
    filename: str
    status: str
    attempts: int = 0
    error: DeliveryError | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "url": self.url,
            "filename": self.filename,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out


@dataclass
class BatchOutcome:
    section: str
    total: int
    assets: list[AssetOutcome] = field(default_factory=list)
    error: DeliveryError | None = None

    @property
    def imported(self) -> int:
        return sum(1 for a in self.assets if a.status == IMPORTED)

    @property
    def skipped(self) -> int:
        return sum(1 for a in self.assets if a.status == SKIPPED)

    @property
    def verified(self) -> bool:
        """All assets either imported (and verified) or already present."""
        return self.error is None and self.total > 0 and self.imported + self.skipped == self.total


@dataclass
class StepOutcome:
    ok: bool
    attempts: int = 0
    skipped: bool = False
    error: DeliveryError | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowResult:
    success: bool
    actions: ActionsPerformed
    final_state: str
    error: DeliveryError | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "actions": self.actions.to_dict(),
            "final_state": self.final_state,
            "error": self.error.to_dict() if self.error else None,
            "history": list(self.history),
        }


__all__ = [
    "ADD_3D",
    "ASSET_FAILED",
    "BASELINE",
    "DELIVER",
    "DONE",
    "FAILED",
    "IMPORTED",
    "IMPORT_FILES",
    "IMPORT_FLOORPLANS",
    "NAV",
    "SAVE",
    "SKIPPED",
    "TERMINAL_STATES",
    "ActionsPerformed",
    "AssetOutcome",
    "BatchOutcome",
    "StepOutcome",
    "WorkflowResult",
]
