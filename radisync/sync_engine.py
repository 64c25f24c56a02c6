from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from radisync.caldav_client import CalDAVService
from radisync.config_manager import ConfigManager
from radisync.google_client import GoogleCalendarError, GoogleCalendarService
from radisync.models import AppConfig, DeleteResult, PassResult, UpsertResult
from radisync.oauth import TokenProvider
from radisync.reconciler import (
    delete_caldav_events,
    delete_remote_events,
    upsert_caldav_events,
    upsert_remote_events,
)
from radisync.state_store import (
    CALDAV_SYNC_TOKEN_KEY,
    GOOGLE_CALENDAR_ID_KEY,
    GOOGLE_OAUTH_TOKEN_KEY,
    GOOGLE_SYNC_TOKEN_KEY,
    StateStore,
)

logger = logging.getLogger(__name__)

CALDAV_TO_GOOGLE = "caldav_to_google"
GOOGLE_TO_CALDAV = "google_to_caldav"
DIRECTIONS = (CALDAV_TO_GOOGLE, GOOGLE_TO_CALDAV)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    """Runs one incremental pass per direction and advances its checkpoint on a clean pass."""

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        log: logging.Logger | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.log = log or logger
        self._locks = {direction: threading.Lock() for direction in DIRECTIONS}

    def _google_service(self, config: AppConfig) -> GoogleCalendarService:
        calendar_id = self.state_store.get(GOOGLE_CALENDAR_ID_KEY)
        if not calendar_id:
            raise GoogleCalendarError("No Google Calendar ID found")
        return GoogleCalendarService(
            config.google,
            TokenProvider(self.state_store, config.google),
            calendar_id=calendar_id,
            log=self.log,
        )

    def _complete(
        self,
        *,
        direction: str,
        trigger: str,
        checkpoint_key: str,
        sync_token: str,
        deleted: DeleteResult,
        upserted: UpsertResult,
    ) -> PassResult:
        result = PassResult(
            direction=direction,
            status="success",
            message="",
            sync_token=sync_token,
            deleted=deleted,
            upserted=upserted,
            trigger=trigger,
        )
        errors = result.errors
        if errors:
            self.log.warning("[%s] Skipping sync token save due to %s errors", direction, len(errors))
            result.status = "partial"
        else:
            self.state_store.put(checkpoint_key, sync_token)
            result.checkpoint_saved = True
        result.message = (
            f"deleted={deleted.deleted}, updated={upserted.updated}, "
            f"created={upserted.created}, errors={len(errors)}"
        )
        self.log.info("[%s] Done: %s", direction, result.message)
        return result

    def _caldav_to_google(self, trigger: str) -> PassResult:
        config = self.config_manager.load()
        google = self._google_service(config)
        caldav = CalDAVService(config.caldav, log=self.log)

        fetched = caldav.fetch_changes(self.state_store.get(CALDAV_SYNC_TOKEN_KEY))
        deleted = delete_remote_events(google, fetched.deleted, self.log) if fetched.deleted else DeleteResult()
        upserted = upsert_remote_events(google, fetched.events, self.log) if fetched.events else UpsertResult()
        return self._complete(
            direction=CALDAV_TO_GOOGLE,
            trigger=trigger,
            checkpoint_key=CALDAV_SYNC_TOKEN_KEY,
            sync_token=fetched.sync_token,
            deleted=deleted,
            upserted=upserted,
        )

    def _google_to_caldav(self, trigger: str) -> PassResult:
        config = self.config_manager.load()
        google = self._google_service(config)
        caldav = CalDAVService(config.caldav, log=self.log)

        fetched = google.fetch_changes(
            self.state_store.get(GOOGLE_SYNC_TOKEN_KEY),
            on_token_expired=lambda: self.state_store.delete(GOOGLE_SYNC_TOKEN_KEY),
        )
        deleted = delete_caldav_events(caldav, fetched.deleted, self.log) if fetched.deleted else DeleteResult()
        upserted = upsert_caldav_events(caldav, fetched.events, self.log) if fetched.events else UpsertResult()
        return self._complete(
            direction=GOOGLE_TO_CALDAV,
            trigger=trigger,
            checkpoint_key=GOOGLE_SYNC_TOKEN_KEY,
            sync_token=fetched.sync_token,
            deleted=deleted,
            upserted=upserted,
        )

    def _run(self, direction: str, trigger: str, body: Callable[[str], PassResult]) -> PassResult:
        lock = self._locks[direction]
        if not lock.acquire(blocking=False):
            self.log.info("[%s] Pass already running, skipping", direction)
            return PassResult(direction=direction, status="skipped", message="pass already running", trigger=trigger)

        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_pass(direction=direction, trigger=trigger)
        self.log.info("[%s] Starting pass (%s)", direction, trigger)
        try:
            result = body(trigger)
        except Exception as exc:
            self.state_store.finish_pass(
                run_id,
                status="failed",
                message=f"{type(exc).__name__}: {exc}",
                duration_ms=_elapsed_ms(started_at),
            )
            raise
        finally:
            lock.release()

        result.duration_ms = _elapsed_ms(started_at)
        self.state_store.finish_pass(
            run_id,
            status=result.status,
            message=result.message,
            duration_ms=result.duration_ms,
            deleted=result.deleted.deleted,
            updated=result.upserted.updated,
            created=result.upserted.created,
            errors=result.errors,
            checkpoint_saved=result.checkpoint_saved,
        )
        return result

    def run_caldav_to_google(self, trigger: str = "manual") -> PassResult:
        return self._run(CALDAV_TO_GOOGLE, trigger, self._caldav_to_google)

    def run_google_to_caldav(self, trigger: str = "manual") -> PassResult:
        return self._run(GOOGLE_TO_CALDAV, trigger, self._google_to_caldav)

    def run_once(self, trigger: str = "manual") -> list[PassResult]:
        """Run both directions; a fatal error in one is reported without stopping the other."""
        if not self.state_store.get(GOOGLE_OAUTH_TOKEN_KEY) or not self.state_store.get(GOOGLE_CALENDAR_ID_KEY):
            self.log.error("Missing Google OAuth token or calendar id; log in before syncing")
            return [
                PassResult(direction=direction, status="skipped", message="not authorized", trigger=trigger)
                for direction in DIRECTIONS
            ]

        results: list[PassResult] = []
        for direction, runner in (
            (CALDAV_TO_GOOGLE, self.run_caldav_to_google),
            (GOOGLE_TO_CALDAV, self.run_google_to_caldav),
        ):
            try:
                results.append(runner(trigger))
            except Exception as exc:
                self.log.error("[%s] Pass failed: %s", direction, exc, exc_info=True)
                results.append(
                    PassResult(
                        direction=direction,
                        status="failed",
                        message=f"{type(exc).__name__}: {exc}",
                        trigger=trigger,
                    )
                )
        return results
