"""
Session state for in-progress visits.

A session is keyed by (site, session id) and lives in the container's
TTLCache for SESSION_TIMEOUT_SECONDS after its last activity. On a cache
miss the stored record is reloaded if it is still inside the timeout
window; otherwise the id starts over as a brand new session.

    absent -> active          first pageview/event: pageViewCount=1, isBounce=True
    active -> active          pageview: pageViewCount+1, isBounce=False, exitPath, duration
                              event:    eventCount+1, endedAt, duration (bounce unchanged)
    active -> expired         no activity for the timeout; next hit starts fresh
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from .cache import TTLCache, session_cache_key
from .errors import StorageError
from .models import Device, Session, Utm
from .storage import AnalyticsStore

logger = logging.getLogger(__name__)


def _duration_ms(started_at: datetime, now: datetime) -> int:
    return max(0, int((now - started_at).total_seconds() * 1000))


class SessionManager:
    def __init__(self, store: AnalyticsStore, cache: TTLCache[Session], timeout_seconds: int):
        self.store = store
        self.cache = cache
        self.timeout_seconds = timeout_seconds

    def is_active(self, session: Session, now: datetime) -> bool:
        return (now - session.ended_at).total_seconds() <= self.timeout_seconds

    def get(self, site_id: str, session_id: str, now: datetime) -> Optional[Session]:
        """Cached session, else the stored one if it has not timed out, else None."""
        key = session_cache_key(site_id, session_id)
        session = self.cache.get(key)
        if session is not None:
            return session

        try:
            session = self.store.get_session(site_id, session_id)
        except StorageError as e:
            # A failed lookup only costs session continuity; ingestion goes on.
            logger.warning(f"Failed to load session {session_id} for {site_id}: {e}")
            return None

        if session is None or not self.is_active(session, now):
            return None
        self.cache.set(key, session, self.timeout_seconds)
        return session

    def save(self, session: Session, ttl_seconds: Optional[int] = None) -> None:
        """Persist the session (ttl_seconds is the stored record's retention) and cache it."""
        self.store.put_session(session, ttl_seconds)
        self.cache.set(session_cache_key(session.site_id, session.id), session, self.timeout_seconds)

    def _start(
        self,
        site_id: str,
        session_id: str,
        visitor_id: str,
        path: str,
        now: datetime,
        referrer: Optional[str],
        referrer_source: Optional[str],
        utm: Optional[Utm],
        device: Optional[Device],
        country: Optional[str],
    ) -> Session:
        return Session(
            id=session_id,
            site_id=site_id,
            visitor_id=visitor_id,
            entry_path=path,
            exit_path=path,
            referrer=referrer,
            referrer_source=referrer_source,
            utm=utm,
            device=device,
            country=country,
            page_view_count=1,
            event_count=0,
            is_bounce=True,
            duration=0,
            started_at=now,
            ended_at=now,
        )

    def apply_pageview(
        self,
        site_id: str,
        session_id: str,
        visitor_id: str,
        path: str,
        now: datetime,
        referrer: Optional[str] = None,
        referrer_source: Optional[str] = None,
        utm: Optional[Utm] = None,
        device: Optional[Device] = None,
        country: Optional[str] = None,
    ) -> Tuple[Session, bool]:
        """
        Apply a pageview to the session.

        Returns (session, is_new). Nothing is written; call save() once the
        page view itself is stored.
        """
        session = self.get(site_id, session_id, now)
        is_new = session is None

        if session is None:
            session = self._start(
                site_id, session_id, visitor_id, path, now, referrer, referrer_source, utm, device, country
            )
        else:
            session = session.model_copy(
                update={
                    "page_view_count": session.page_view_count + 1,
                    "exit_path": path,
                    "is_bounce": False,
                    "ended_at": now,
                    "duration": _duration_ms(session.started_at, now),
                }
            )

        return session, is_new

    def apply_event(
        self,
        site_id: str,
        session_id: str,
        visitor_id: str,
        path: str,
        now: datetime,
        referrer: Optional[str] = None,
        referrer_source: Optional[str] = None,
        utm: Optional[Utm] = None,
        device: Optional[Device] = None,
        country: Optional[str] = None,
    ) -> Tuple[Session, bool]:
        """Apply a custom event. Events never clear the bounce flag."""
        session = self.get(site_id, session_id, now)
        is_new = session is None

        if session is None:
            session = self._start(
                site_id, session_id, visitor_id, path, now, referrer, referrer_source, utm, device, country
            )
            session = session.model_copy(update={"event_count": 1})
        else:
            session = session.model_copy(
                update={
                    "event_count": session.event_count + 1,
                    "ended_at": now,
                    "duration": _duration_ms(session.started_at, now),
                }
            )

        return session, is_new
