"""
Emergency dispatch.

A dispatch takes one EmergencyRequest through
``received -> located -> (no_candidates | dispatching -> completed)``:
nearby ambulances are found through the locator, then every candidate is
notified independently through the notification gateway. A failed or timed
out notification is recorded against that candidate only; the request itself
fails only for invalid input or an unreachable registry.
"""
import asyncio
import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from cachetools import LRUCache

from config import Config
from core import geo
from core.errors import DatastoreError, DispatchServiceError, GatewayError, NotFoundError, ValidationError
from core.gateway import NotificationGateway
from core.locator import AmbulanceLocator, LocatedAmbulance
from core.messages import EmergencyMessageComposer
from models import (
    CandidateOutcome, DispatchResult, DispatchState, DispatchSummary,
    EmergencyRequest, NotificationStatus
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DispatchState, Optional[CandidateOutcome]], None]

NO_CANDIDATES_MESSAGE = "No ambulance found nearby"


class DispatchLog:
    """Bounded in-memory history of recent dispatch results."""

    def __init__(self, maxsize: int = 500):
        self._results = LRUCache(maxsize=maxsize)
        self._lock = threading.Lock()

    def record(self, result: DispatchResult):
        with self._lock:
            self._results[result.dispatch_id] = result

    def get(self, dispatch_id: str) -> DispatchResult:
        with self._lock:
            result = self._results.get(dispatch_id)
        if result is None:
            raise NotFoundError(f"Dispatch not found: {dispatch_id}")
        return result

    def recent(self, limit: int = 20) -> List[DispatchResult]:
        with self._lock:
            results = list(self._results.values())
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results[:limit]

    def __len__(self) -> int:
        return len(self._results)


class EmergencyDispatcher:
    """Finds nearby ambulances for an emergency and notifies each of them."""

    def __init__(
        self,
        locator: AmbulanceLocator,
        gateway: NotificationGateway,
        composer: EmergencyMessageComposer,
        dispatch_log: Optional[DispatchLog] = None,
        default_radius_km: float = 5.0,
        max_radius_km: float = 100.0,
        max_candidates: Optional[int] = 10,
        concurrency: int = 10,
        notify_timeout: float = 8.0,
        registry_timeout: float = 5.0,
    ):
        self.locator = locator
        self.gateway = gateway
        self.composer = composer
        self.dispatch_log = dispatch_log if dispatch_log is not None else DispatchLog()
        self.default_radius_km = default_radius_km
        self.max_radius_km = max_radius_km
        self.max_candidates = max_candidates
        self.concurrency = max(1, concurrency)
        self.notify_timeout = notify_timeout
        self.registry_timeout = registry_timeout

    @classmethod
    def from_config(
        cls,
        settings: Config,
        locator: AmbulanceLocator,
        gateway: NotificationGateway,
        composer: EmergencyMessageComposer,
    ) -> "EmergencyDispatcher":
        return cls(
            locator=locator,
            gateway=gateway,
            composer=composer,
            dispatch_log=DispatchLog(settings.dispatch_history_size),
            default_radius_km=settings.default_radius_km,
            max_radius_km=settings.max_radius_km,
            max_candidates=settings.max_candidates,
            concurrency=settings.notify_concurrency,
            notify_timeout=settings.notify_timeout_s,
            registry_timeout=settings.registry_timeout_s,
        )

    async def dispatch(self, request: EmergencyRequest, on_progress: Optional[ProgressCallback] = None) -> DispatchResult:
        """Locate and notify ambulances for one emergency request."""
        location = geo.validate_point(request.requester_location, "requester location")
        radius_km = self._resolve_radius(request.radius_km)
        callback_phone = (request.callback_phone or "").strip() or None

        dispatch_id = uuid.uuid4().hex
        _report(on_progress, DispatchState.RECEIVED)

        located = await self._locate(location, radius_km)
        if self.max_candidates:
            located = located[:self.max_candidates]
        _report(on_progress, DispatchState.LOCATED)

        if not located:
            logger.info("Dispatch %s: no ambulance within %.2f km", dispatch_id, radius_km)
            result = DispatchResult(
                dispatch_id=dispatch_id,
                state=DispatchState.NO_CANDIDATES,
                live=False,
                requester_location=location,
                radius_km=radius_km,
                message=NO_CANDIDATES_MESSAGE,
                created_at=datetime.now(),
            )
            _report(on_progress, DispatchState.NO_CANDIDATES)
            self.dispatch_log.record(result)
            return result

        _report(on_progress, DispatchState.DISPATCHING)

        if callback_phone is None:
            outcomes = [_outcome(item, NotificationStatus.SKIPPED, reason="dry run") for item in located]
            for outcome in outcomes:
                _report(on_progress, DispatchState.DISPATCHING, outcome)
            message = f"Found {len(outcomes)} ambulance(s) nearby. Provide a callback phone to notify them."
        else:
            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(*[
                self._notify_candidate(item, location, callback_phone, semaphore, on_progress)
                for item in located
            ])
            message = "Emergency call sent to nearby ambulances"

        result = DispatchResult(
            dispatch_id=dispatch_id,
            state=DispatchState.COMPLETED,
            live=callback_phone is not None,
            requester_location=location,
            radius_km=radius_km,
            candidates=list(outcomes),
            summary=_summarize(outcomes),
            message=message,
            created_at=datetime.now(),
        )
        logger.info(
            "Dispatch %s completed: %d notified, %d failed, %d skipped",
            dispatch_id, result.summary.notified, result.summary.failed, result.summary.skipped
        )
        _report(on_progress, DispatchState.COMPLETED)
        self.dispatch_log.record(result)
        return result

    def _resolve_radius(self, radius_km: Optional[float]) -> float:
        if radius_km is None:
            return self.default_radius_km
        if not 0 < radius_km <= self.max_radius_km:
            raise ValidationError(
                f"radius must be greater than 0 and at most {self.max_radius_km:g} km",
                {"radiusKm": f"must be in (0, {self.max_radius_km:g}]"}
            )
        return radius_km

    async def _locate(self, location, radius_km: float) -> List[LocatedAmbulance]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.locator.locate, location, radius_km),
                timeout=self.registry_timeout
            )
        except asyncio.TimeoutError as e:
            logger.error("Registry query timed out after %.1fs", self.registry_timeout)
            raise DatastoreError("Registry query timed out") from e
        except DispatchServiceError:
            raise
        except Exception as e:
            logger.error("Registry query failed: %s", e)
            raise DatastoreError(f"Registry query failed: {e}") from e

    async def _notify_candidate(
        self,
        item: LocatedAmbulance,
        location,
        callback_phone: str,
        semaphore: asyncio.Semaphore,
        on_progress: Optional[ProgressCallback],
    ) -> CandidateOutcome:
        record = item.record
        if not (record.driver_contact or "").strip():
            outcome = _outcome(item, NotificationStatus.SKIPPED, reason="missing driver contact")
            _report(on_progress, DispatchState.DISPATCHING, outcome)
            return outcome

        async with semaphore:
            message = await self.composer.compose(location, callback_phone, item.distance_km)
            try:
                receipt = await asyncio.wait_for(
                    self.gateway.notify(record.driver_contact, message, callback_phone),
                    timeout=self.notify_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Notification to %s timed out", record.id)
                outcome = _outcome(item, NotificationStatus.FAILED, reason="timeout")
            except GatewayError as e:
                logger.warning("Notification to %s failed: %s", record.id, e)
                outcome = _outcome(item, NotificationStatus.FAILED, reason=str(e))
            except Exception as e:
                logger.exception("Unexpected error notifying %s", record.id)
                outcome = _outcome(item, NotificationStatus.FAILED, reason=str(e) or e.__class__.__name__)
            else:
                outcome = _outcome(
                    item, NotificationStatus.NOTIFIED,
                    provider_id=receipt.provider_id, sms_id=receipt.sms_id
                )

        _report(on_progress, DispatchState.DISPATCHING, outcome)
        return outcome


def _outcome(item: LocatedAmbulance, status: NotificationStatus, **extra) -> CandidateOutcome:
    record = item.record
    return CandidateOutcome(
        ambulance_id=record.id,
        name=record.name,
        vehicle_number=record.vehicle_number,
        driver_name=record.driver_name,
        driver_contact=record.driver_contact,
        distance_km=item.distance_km,
        notification_status=status,
        call_link=f"tel:{record.driver_contact}" if record.driver_contact else None,
        **extra
    )


def _summarize(outcomes: List[CandidateOutcome]) -> DispatchSummary:
    summary = DispatchSummary(total=len(outcomes))
    for outcome in outcomes:
        if outcome.notification_status == NotificationStatus.NOTIFIED:
            summary.notified += 1
        elif outcome.notification_status == NotificationStatus.FAILED:
            summary.failed += 1
        else:
            summary.skipped += 1
    return summary


def _report(on_progress: Optional[ProgressCallback], state: DispatchState, outcome: Optional[CandidateOutcome] = None):
    if on_progress is None:
        return
    try:
        on_progress(state, outcome)
    except Exception:
        logger.exception("Dispatch progress callback failed")
