"""
Quarry ORM Observers
====================

Model lifecycle hooks.

Observers are notifications: their return values are ignored. An
observer that should be able to cancel an operation must subclass
VetoingObserver and return False from a "before" hook.

Example:
    class AuditObserver(Observer):
        async def created(self, model):
            await audit_log.write("created", model.to_dict())

    db = Database("sqlite:///app.db")
    User.use(db)
    User.observe(AuditObserver())

    # Function handlers
    db.observers.listen(User, "deleted", lambda user: cache.forget(user.id))
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type


logger = logging.getLogger(__name__)


class ModelEvent(Enum):
    """Model lifecycle events."""

    SAVING = "saving"
    SAVED = "saved"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    UPDATED = "updated"
    DELETING = "deleting"
    DELETED = "deleted"
    RESTORING = "restoring"
    RESTORED = "restored"

    @property
    def is_before(self) -> bool:
        """True for events fired before the write happens."""
        return self in _BEFORE_EVENTS


_BEFORE_EVENTS = frozenset({
    ModelEvent.SAVING,
    ModelEvent.CREATING,
    ModelEvent.UPDATING,
    ModelEvent.DELETING,
    ModelEvent.RESTORING,
})


class Observer:
    """
    Base observer. Override the hooks you need; sync or async both work.
    """

    def saving(self, model: Any) -> Any: ...
    def saved(self, model: Any) -> Any: ...
    def creating(self, model: Any) -> Any: ...
    def created(self, model: Any) -> Any: ...
    def updating(self, model: Any) -> Any: ...
    def updated(self, model: Any) -> Any: ...
    def deleting(self, model: Any) -> Any: ...
    def deleted(self, model: Any) -> Any: ...
    def restoring(self, model: Any) -> Any: ...
    def restored(self, model: Any) -> Any: ...

    def handler_for(self, event: ModelEvent) -> Optional[Callable[[Any], Any]]:
        return getattr(self, event.value)


class VetoingObserver(Observer):
    """
    Observer whose before-hooks may cancel the operation.

    Returning False from saving, creating, updating, deleting or
    restoring stops the operation before any SQL is issued. Any other
    return value lets it continue.
    """
    pass


class _CallbackObserver(Observer):
    """Wraps a single function registered with ObserverRegistry.listen."""

    def __init__(self, event: ModelEvent, callback: Callable[[Any], Any]) -> None:
        self.event = event
        self.callback = callback

    def handler_for(self, event: ModelEvent) -> Optional[Callable[[Any], Any]]:
        return self.callback if event is self.event else None


def model_key(model_cls: Type[Any]) -> str:
    """Stable identifier for a model class."""
    return f"{model_cls.__module__}.{model_cls.__qualname__}"


class ObserverRegistry:
    """
    Observers per model class, keyed by a stable type identifier.

    A registry is owned by a Database, so separate databases (and
    separate tests) never share observers.
    """

    def __init__(self) -> None:
        self._observers: Dict[str, List[Observer]] = {}

    def register(self, model_cls: Type[Any], observer: Observer) -> Observer:
        """Append an observer for a model class."""
        self._observers.setdefault(model_key(model_cls), []).append(observer)
        return observer

    def listen(
        self,
        model_cls: Type[Any],
        event: Any,
        callback: Callable[[Any], Any],
    ) -> Observer:
        """Register a single function for one event."""
        return self.register(model_cls, _CallbackObserver(ModelEvent(event), callback))

    def observers_for(self, model_cls: Type[Any]) -> List[Observer]:
        return list(self._observers.get(model_key(model_cls), []))

    def clear(self, model_cls: Optional[Type[Any]] = None) -> None:
        """Remove observers for one model class, or all of them."""
        if model_cls is None:
            self._observers.clear()
        else:
            self._observers.pop(model_key(model_cls), None)

    async def dispatch(self, model_cls: Type[Any], event: Any, model: Any) -> bool:
        """
        Fire an event for every observer of model_cls, in order.

        Returns False only when a VetoingObserver cancelled a before-event.
        Exceptions raised by observers propagate.
        """
        event = ModelEvent(event)

        for observer in self._observers.get(model_key(model_cls), []):
            handler = observer.handler_for(event)
            if handler is None:
                continue

            result = handler(model)
            if inspect.isawaitable(result):
                result = await result

            if result is False and event.is_before and isinstance(observer, VetoingObserver):
                logger.debug(
                    "%s vetoed %s on %s",
                    type(observer).__name__,
                    event.value,
                    model_cls.__name__,
                )
                return False

        return True
