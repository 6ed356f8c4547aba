from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import caldav
from caldav.elements import dav
from caldav.lib import error as caldav_error

from plansync.errors import NotFound, RemoteUnavailable, VersionConflict
from plansync.gateway import RemoteCalendarGateway
from plansync.models import CalDAVConfig, Collection, RemoteObject, normalize_collection_id

logger = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"


def _decode_body(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data or "")


def _header(response: Any, name: str) -> str:
    headers = getattr(response, "headers", None) or {}
    return str(headers.get(name) or headers.get(name.lower()) or "")


def _raise_for_status(response: Any, action: str, url: str) -> None:
    status = int(getattr(response, "status", 0) or 0)
    if 200 <= status < 300:
        return
    if status == 412:
        raise VersionConflict(f"{action} {url}: version tag no longer matches")
    if status == 404:
        raise NotFound(f"{action} {url}: object not found")
    raise RemoteUnavailable(f"{action} {url} failed with HTTP {status}")


class CalDAVGateway(RemoteCalendarGateway):
    """Gateway over the ``caldav`` library; conditional writes go through raw requests."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise RemoteUnavailable("CalDAV config is incomplete.")
        try:
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            self._principal = self._client.principal()
        except (caldav_error.DAVError, OSError) as exc:
            self._client = None
            raise RemoteUnavailable(f"Cannot reach CalDAV server: {exc}") from exc

    def _request(self, url: str, method: str, body: str = "", headers: dict[str, str] | None = None) -> Any:
        self._connect()
        try:
            return self._client.request(url, method, body, headers or {})
        except (caldav_error.DAVError, OSError) as exc:
            raise RemoteUnavailable(f"{method} {url} failed: {exc}") from exc

    def list_collections(self) -> list[Collection]:
        self._connect()
        try:
            calendars = self._principal.calendars()
        except (caldav_error.DAVError, OSError) as exc:
            raise RemoteUnavailable(f"Listing calendars failed: {exc}") from exc
        self._calendar_cache = {}
        collections: list[Collection] = []
        for calendar in calendars:
            collection_id = str(calendar.url)
            name = getattr(calendar, "name", "") or collection_id
            self._calendar_cache[collection_id] = calendar
            collections.append(Collection(collection_id=collection_id, name=name, display_name=name))
        return collections

    def _get_calendar(self, collection_id: str) -> Any:
        if collection_id in self._calendar_cache:
            return self._calendar_cache[collection_id]
        wanted = normalize_collection_id(collection_id)
        for known in self.list_collections():
            if normalize_collection_id(known.collection_id) == wanted:
                return self._calendar_cache[known.collection_id]
        raise NotFound(f"Calendar not found: {collection_id}")

    def fetch_objects(self, collection_id: str, start: datetime, end: datetime) -> list[RemoteObject]:
        self._connect()
        calendar = self._get_calendar(collection_id)
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=False, props=[dav.GetEtag()])
        except (caldav_error.DAVError, OSError) as exc:
            raise RemoteUnavailable(f"Fetching {collection_id} failed: {exc}") from exc
        objects: list[RemoteObject] = []
        for resource in resources:
            props = getattr(resource, "props", None) or {}
            objects.append(
                RemoteObject(
                    href=str(getattr(resource, "url", "") or ""),
                    etag=str(props.get(dav.GetEtag.tag) or ""),
                    data=_decode_body(resource.data),
                )
            )
        logger.debug("Fetched %d objects from %s", len(objects), collection_id)
        return objects

    def _object_url(self, collection_id: str, href_or_filename: str) -> str:
        if "://" in href_or_filename:
            return href_or_filename
        calendar = self._get_calendar(collection_id)
        return str(calendar.url.join(href_or_filename))

    def get_object(self, collection_id: str, href: str) -> RemoteObject:
        url = self._object_url(collection_id, href)
        response = self._request(url, "GET")
        _raise_for_status(response, "GET", url)
        return RemoteObject(href=url, etag=_header(response, "ETag"), data=_decode_body(response.raw))

    def create_object(self, collection_id: str, data: str, filename: str) -> RemoteObject:
        url = self._object_url(collection_id, filename)
        response = self._request(
            url, "PUT", data, {"Content-Type": ICS_CONTENT_TYPE, "If-None-Match": "*"}
        )
        _raise_for_status(response, "PUT", url)
        return RemoteObject(href=url, etag=_header(response, "ETag"), data=data)

    def update_object(self, obj: RemoteObject, data: str, if_match: str | None) -> RemoteObject:
        headers = {"Content-Type": ICS_CONTENT_TYPE}
        if if_match:
            headers["If-Match"] = if_match
        response = self._request(obj.href, "PUT", data, headers)
        _raise_for_status(response, "PUT", obj.href)
        return RemoteObject(href=obj.href, etag=_header(response, "ETag"), data=data)

    def delete_object(self, obj: RemoteObject, version: str | None) -> None:
        headers = {"If-Match": version} if version else {}
        response = self._request(obj.href, "DELETE", "", headers)
        _raise_for_status(response, "DELETE", obj.href)
