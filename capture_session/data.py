import uuid
from enum import Enum
from typing import Optional, Any
from datetime import datetime, timedelta
from collections.abc import Iterator, Mapping, MutableMapping
import jsonpickle
from jsonpickle.unpickler import loadclass
from datamodel import BaseModel
from pydantic import BaseModel as PydanticBaseModel
from .conf import (
    SESSION_KEY,
    SESSION_ID,
    SESSION_ROLE,
    SESSION_CAPTURE
)
from .vault.models import utcnow

_MISSING = object()


class ModelHandler(jsonpickle.handlers.BaseHandler):
    """ModelHandler.
    datamodel instances are written as their attribute dict and rebuilt
    without calling __init__.
    """
    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(obj.__dict__, reset=False)
        return data

    def restore(self, obj):
        mdl = loadclass(obj['py/object'])
        instance = mdl.__new__(mdl)
        instance.__dict__ = self.context.restore(obj['__dict__'], reset=False)
        return instance

jsonpickle.handlers.registry.register(BaseModel, ModelHandler, base=True)


class PydanticHandler(jsonpickle.handlers.BaseHandler):
    """PydanticHandler.
    Pydantic models are flattened to their field values and rebuilt
    through validation.
    """
    def flatten(self, obj, data):
        data['fields'] = self.context.flatten(obj.model_dump(), reset=False)
        return data

    def restore(self, obj):
        mdl = loadclass(obj['py/object'])
        return mdl.model_validate(self.context.restore(obj['fields'], reset=False))

jsonpickle.handlers.registry.register(PydanticBaseModel, PydanticHandler, base=True)


class SessionState(str, Enum):
    UNAUTHENTICATED = 'unauthenticated'
    ACTIVE = 'active'
    ROTATION_DUE = 'rotation_due'
    IDLE_EXPIRED = 'idle_expired'
    DESTROYED = 'destroyed'


class SessionData(MutableMapping[str, Any]):
    """Session dict-like object.

    Holds the claims of one logical session (identity, role, the capture
    window it owns) plus its lifecycle timestamps. Free-form claims can be
    set as ``session.key = value`` or ``session['key'] = value``.

    Serializable claims are stored in _data and survive rotation and
    persistence; other objects are stored in _objects and only live as long
    as this instance.
    """

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        *,
        id: Optional[str] = None,
        identity: Optional[str] = None,
        role: Optional[str] = None,
        capture_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> None:
        self._data = dict(data or {})
        self._objects = {}
        self._changed = True
        self._id_ = id or uuid.uuid4().hex
        self._identity = identity
        self._role = role
        self._capture_id = capture_id
        now = now or utcnow()
        self._created = self._last_activity = self._last_rotated = now
        self._state = (
            SessionState.ACTIVE if identity else SessionState.UNAUTHENTICATED
        )

    def __repr__(self) -> str:
        return (
            f'<Session [{self._id_[:8]}..., identity:{self._identity}, '
            f'state:{self._state.value}] '
            f'claims={list(self._data.keys())}, '
            f'objects={list(self._objects.keys())}>'
        )

    # --- Claim storage ---

    _PLAIN_TYPES = (bool, int, float, str, bytes, datetime)

    def _persistable(self, value: Any) -> bool:
        """True when jsonpickle can write ``value`` and read it back as-is.

        Plain values, containers of them, and datamodel/pydantic models
        (registered handlers above) qualify; anything else stays in memory.
        """
        if value is None or isinstance(value, self._PLAIN_TYPES):
            return True
        if isinstance(value, (BaseModel, PydanticBaseModel)):
            return True
        if isinstance(value, dict):
            return all(map(self._persistable, value.values()))
        if isinstance(value, (list, tuple, set, frozenset)):
            return all(map(self._persistable, value))
        return False

    def _lookup(self, key: str) -> Any:
        for store in (self._objects, self._data):
            if key in store:
                return store[key]
        raise KeyError(key)

    def _assign(self, key: str, value: Any) -> None:
        if self._persistable(value):
            target, other = self._data, self._objects
            self._changed = True
        else:
            # in-memory only, never persisted nor carried across rotation
            target, other = self._objects, self._data
        other.pop(key, None)
        target[key] = value

    def _discard(self, key: str) -> None:
        found = self._objects.pop(key, _MISSING) is not _MISSING
        if self._data.pop(key, _MISSING) is not _MISSING:
            self._changed = True
            found = True
        if not found:
            raise KeyError(key)

    # --- Properties ---

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def identity(self) -> Optional[str]:  # type: ignore[misc]
        return self._identity

    @property
    def role(self) -> Optional[str]:
        return self._role

    @property
    def capture_id(self) -> Optional[str]:
        return self._capture_id

    @property
    def created(self) -> datetime:
        return self._created

    @property
    def last_activity(self) -> datetime:
        return self._last_activity

    @property
    def last_rotated(self) -> datetime:
        return self._last_rotated

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def authenticated(self) -> bool:
        return bool(self._identity) and self._state in (
            SessionState.ACTIVE, SessionState.ROTATION_DUE
        )

    @property
    def empty(self) -> bool:
        return not bool(self._data) and not bool(self._objects)

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def session_data(self) -> dict:
        """Return only serializable claims (for persistence)."""
        return self._data

    def session_objects(self) -> dict:
        """Return in-memory objects (not persisted)."""
        return self._objects

    # --- Lifecycle ---

    def idle_for(self, now: datetime) -> timedelta:
        return now - self._last_activity

    def age(self, now: datetime) -> timedelta:
        return now - self._created

    def rotation_due(self, now: datetime, interval: timedelta) -> bool:
        return now - self._last_rotated > interval

    def touch(self, now: datetime) -> None:
        """Record activity."""
        self._last_activity = now
        self._changed = True

    def mark(self, state: SessionState) -> None:
        self._state = state

    def invalidate(self) -> None:
        """Clear all claims and in-memory objects; the session is unusable."""
        self._changed = True
        self._data = {}
        self._objects = {}
        self._state = SessionState.DESTROYED

    def rotated(self, new_id: str, now: datetime) -> 'SessionData':
        """Copy claims and timestamps under a new identifier.

        The copy keeps this session's in-memory objects; ``last_rotated``
        is set to ``now``.
        """
        record = self.to_record()
        record[SESSION_ID] = new_id
        record['last_rotated'] = now
        session = type(self).from_record(record)
        session._objects.update(self._objects)
        return session

    # --- Mapping protocol ---

    def __len__(self) -> int:
        return len(self._data) + len(self._objects)

    def __iter__(self) -> Iterator[str]:
        yield from self._data
        yield from (k for k in self._objects if k not in self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._objects or key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._lookup(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self._assign(key, value)

    def __delitem__(self, key: str) -> None:
        self._discard(key)

    def __getattr__(self, key: str) -> Any:
        # only reached for names not found normally
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self._lookup(key)
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key: str, value: Any) -> None:
        # private names and property setters (is_changed) are not claims
        if key.startswith('_') or isinstance(
            getattr(type(self), key, None), property
        ):
            object.__setattr__(self, key, value)
        else:
            self._assign(key, value)

    # --- Persistence ---

    def to_record(self) -> dict:
        return {
            SESSION_ID: self._id_,
            SESSION_KEY: self._identity,
            SESSION_ROLE: self._role,
            SESSION_CAPTURE: self._capture_id,
            'created': self._created,
            'last_activity': self._last_activity,
            'last_rotated': self._last_rotated,
            'data': dict(self._data),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'SessionData':
        session = cls(
            data=record.get('data') or {},
            id=record[SESSION_ID],
            identity=record.get(SESSION_KEY),
            role=record.get(SESSION_ROLE),
            capture_id=record.get(SESSION_CAPTURE),
            now=record.get('created'),
        )
        session._last_activity = record.get('last_activity') or session._created
        session._last_rotated = record.get('last_rotated') or session._created
        session._changed = False
        return session

    def encode(self) -> str:
        """encode

            Encode this session using jsonpickle.

        Raises:
            RuntimeError: Error converting data to json.

        Returns:
            str: json version of the session record
        """
        try:
            return jsonpickle.encode(self.to_record())
        except Exception as err:
            raise RuntimeError(err) from err

    @classmethod
    def decode(cls, payload: str) -> 'SessionData':
        """decode.

            Rebuild a session from its jsonpickle payload.

        Raises:
            RuntimeError: Error converting data from json.
        """
        try:
            record = jsonpickle.decode(payload)
            return cls.from_record(record)
        except Exception as err:
            raise RuntimeError(err) from err
