from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from plansync.models import Collection, RemoteObject


class RemoteCalendarGateway(ABC):
    """Client contract for the remote calendar store.

    Implementations apply their own network timeouts. All-day date ranges are
    end-exclusive at this boundary. Failures are reported with the exceptions
    from :mod:`plansync.errors`: ``RemoteUnavailable`` for network/5xx errors,
    ``VersionConflict`` for a version tag mismatch and ``NotFound`` for a
    missing collection or object.
    """

    @abstractmethod
    def list_collections(self) -> list[Collection]:
        ...

    @abstractmethod
    def fetch_objects(self, collection_id: str, start: datetime, end: datetime) -> list[RemoteObject]:
        ...

    @abstractmethod
    def get_object(self, collection_id: str, href: str) -> RemoteObject:
        """Fetch one object by href with its current version tag."""

    @abstractmethod
    def create_object(self, collection_id: str, data: str, filename: str) -> RemoteObject:
        """Create ``filename`` in the collection; an existing object under that name is a conflict."""

    @abstractmethod
    def update_object(self, obj: RemoteObject, data: str, if_match: str | None) -> RemoteObject:
        ...

    @abstractmethod
    def delete_object(self, obj: RemoteObject, version: str | None) -> None:
        ...
