from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from fieldtask.domain.actor import Actor
from fieldtask.domain.errors import PreconditionError
from fieldtask.domain.geofence import FenceSource, LatLng, is_inside_any_fence, resolve_effective_fences
from fieldtask.domain.state_machine import TaskAction, is_gated

logger = logging.getLogger(__name__)

CompletedCounter = Callable[[Sequence[str]], int]
ProjectLookup = Callable[[str], Any | None]


class PreconditionReason(StrEnum):
    DEPENDENCIES_INCOMPLETE = "DEPENDENCIES_INCOMPLETE"
    QR_REQUIRED = "QR_REQUIRED"
    LOCATION_REQUIRED = "LOCATION_REQUIRED"
    OUTSIDE_GEOFENCE = "OUTSIDE_GEOFENCE"


@dataclass(frozen=True)
class ActionContext:
    lat: float | None = None
    lng: float | None = None
    qr_token: str | None = None
    admin_override: bool = False

    def point(self) -> LatLng | None:
        if self.lat is None or self.lng is None:
            return None
        if not (math.isfinite(self.lat) and math.isfinite(self.lng)):
            return None
        return LatLng(lat=self.lat, lng=self.lng)


@dataclass(frozen=True)
class GateDecision:
    overridden: bool = False
    fence_source: FenceSource | None = None


class PreconditionGate:
    """Checks that an opening action may be applied; never touches the log itself."""

    def _override_effective(self, actor: Actor, context: ActionContext) -> bool:
        if context.admin_override and not actor.privileged:
            logger.info("override ignored for non-privileged actor", extra={"actor_id": actor.id})
            return False
        return context.admin_override

    def _deny(self, reason: PreconditionReason, message: str, task: Any, **detail: Any) -> PreconditionError:
        logger.info(
            "precondition failed",
            extra={"reason_code": str(reason), "task_id": getattr(task, "id", None)},
        )
        return PreconditionError(str(reason), message, detail=detail)

    def check(
        self,
        actor: Actor,
        task: Any,
        action: TaskAction,
        context: ActionContext,
        *,
        completed_count: CompletedCounter,
        project_lookup: ProjectLookup,
    ) -> GateDecision:
        if not is_gated(action):
            return GateDecision()
        if self._override_effective(actor, context):
            return GateDecision(overridden=True)

        dependency_ids = list(dict.fromkeys(getattr(task, "dependent_task_ids", None) or []))
        if dependency_ids:
            done = completed_count(dependency_ids)
            if done != len(dependency_ids):
                raise self._deny(
                    PreconditionReason.DEPENDENCIES_INCOMPLETE,
                    "dependencies not completed",
                    task,
                    required=len(dependency_ids),
                    completed=done,
                )

        if getattr(task, "enforce_qr_scan", False) and not (context.qr_token or "").strip():
            raise self._deny(PreconditionReason.QR_REQUIRED, "QR scan required", task)

        fence_source: FenceSource | None = None
        if getattr(task, "enforce_location_check", False):
            point = context.point()
            if point is None:
                raise self._deny(PreconditionReason.LOCATION_REQUIRED, "location required", task)
            fences, fence_source = resolve_effective_fences(task, project_lookup)
            if fences and not is_inside_any_fence(point, fences):
                raise self._deny(
                    PreconditionReason.OUTSIDE_GEOFENCE,
                    "outside geofence",
                    task,
                    fence_source=str(fence_source),
                    fence_count=len(fences),
                )

        return GateDecision(fence_source=fence_source)
