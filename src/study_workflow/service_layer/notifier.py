"""
Event notifier: scoped publish/subscribe for dashboard sessions.

Admins see every event, doctors see events of studies assigned to them, lab
staff see events of studies from their own location. Delivery is
at-most-once: a session that is disconnected when an event is published
simply misses it and is expected to re-fetch current state on reconnect.
"""
import abc
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from study_workflow.domain.events import Event
from study_workflow.domain.events import StudyAssigned, StudyReceived, StudyStatusChanged
from study_workflow.domain.exceptions import NotFound, Unauthorized
from study_workflow.domain.model import Actor, Role

logger = logging.getLogger(__name__)

ADMIN_SCOPE = "admin"


def doctor_scope(doctor_id: str) -> str:
    return f"doctor:{doctor_id}"


def lab_scope(location_id: str) -> str:
    return f"lab:{location_id}"


class AbstractTransport(abc.ABC):
    """Socket/push gateway. Owns delivery, reconnection and backpressure."""

    @abc.abstractmethod
    def send(self, scope: str, event: Event):
        raise NotImplementedError


@dataclass
class Subscription:
    session_id: str
    role: Role
    user_id: str
    location_id: Optional[str] = None
    connected: bool = True
    unseen: int = 0

    @property
    def scope(self) -> str:
        if self.role == Role.ADMIN:
            return ADMIN_SCOPE
        if self.role == Role.DOCTOR:
            return doctor_scope(self.user_id)
        if self.role == Role.LAB_STAFF and self.location_id:
            return lab_scope(self.location_id)
        return f"user:{self.user_id}"


def scopes_for(event: Event) -> Set[str]:
    """Topics an event is published to."""
    scopes = {ADMIN_SCOPE}
    location_id = getattr(event, "location_id", None)
    if location_id:
        scopes.add(lab_scope(location_id))

    if isinstance(event, StudyAssigned):
        # the previous assignee of a reassigned study is not told
        scopes.add(doctor_scope(event.doctor_id))
    elif isinstance(event, StudyStatusChanged) and event.assigned_doctor_id:
        scopes.add(doctor_scope(event.assigned_doctor_id))
    return scopes


def counts_as_new_item(event: Event, subscription: Subscription) -> bool:
    if isinstance(event, StudyReceived):
        return subscription.role in (Role.ADMIN, Role.LAB_STAFF)
    if isinstance(event, StudyAssigned):
        return subscription.role == Role.DOCTOR and subscription.user_id == event.doctor_id
    return False


class EventNotifier:
    def __init__(self, transport: AbstractTransport):
        self.transport = transport
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, session_id: str, role: Role, user_id: str, location_id: Optional[str] = None) -> Subscription:
        with self._lock:
            subscription = Subscription(
                session_id=session_id, role=role, user_id=user_id, location_id=location_id
            )
            self._subscriptions[session_id] = subscription
        logger.info(f"Session {session_id} subscribed to scope {subscription.scope}")
        return subscription

    def check_owner(self, session_id: str, actor: Actor):
        """Only the session's own user, or an admin, may act on a session."""
        with self._lock:
            subscription = self._get(session_id)
        if actor.role != Role.ADMIN and subscription.user_id != actor.user_id:
            logger.warning(f"{actor.user_id} denied access to session {session_id}")
            raise Unauthorized(f"Session {session_id} belongs to another user")

    def unsubscribe(self, session_id: str):
        with self._lock:
            self._subscriptions.pop(session_id, None)

    def disconnect(self, session_id: str):
        with self._lock:
            self._get(session_id).connected = False

    def reconnect(self, session_id: str):
        with self._lock:
            self._get(session_id).connected = True

    def acknowledge(self, session_id: str) -> int:
        """The session viewed its worklist; reset its unseen counter."""
        with self._lock:
            self._get(session_id).unseen = 0
            return 0

    def unseen_count(self, session_id: str) -> int:
        with self._lock:
            return self._get(session_id).unseen

    def publish(self, event: Event) -> List[str]:
        """
        Publish ``event`` to every scope with a connected subscriber.

        Returns the scopes handed to the transport.
        """
        scopes = scopes_for(event)
        with self._lock:
            receivers = [
                s for s in self._subscriptions.values()
                if s.connected and s.scope in scopes
            ]
            for subscription in receivers:
                if counts_as_new_item(event, subscription):
                    subscription.unseen += 1

        delivered = sorted({s.scope for s in receivers})
        for scope in delivered:
            try:
                self.transport.send(scope, event)
            except Exception as e:
                # best effort: one broken scope must not starve the others
                logger.error(f"Failed to send {type(event).__name__} to scope {scope}: {e}")

        logger.debug(f"{type(event).__name__} for study {event.study_id} delivered to {delivered}")
        return delivered

    def _get(self, session_id: str) -> Subscription:
        try:
            return self._subscriptions[session_id]
        except KeyError:
            raise NotFound(f"Unknown session {session_id}") from None
