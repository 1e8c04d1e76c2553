"""
Eventbrite API client for publishing book club meetings.

Publishing is four calls: create a venue (skipped for online events),
create the event, add a "General Admission" ticket class, then publish.
Any failed step raises EventbriteError naming that step.

API Documentation: https://www.eventbrite.com/platform/api
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TICKET_QUANTITY = 100
TICKET_CLASS_NAME = "General Admission"

STEP_MESSAGES = {
    "venue": "Failed to create venue on Eventbrite",
    "event": "Failed to create event on Eventbrite",
    "ticket_class": "Event created but failed to add ticket class",
    "publish": "Event created but failed to publish",
}


class EventbriteError(Exception):
    """A step of the Eventbrite publishing flow failed."""

    def __init__(self, step: str, status_code: int | None = None, detail: str | None = None):
        self.step = step
        self.status_code = status_code
        self.detail = detail
        super().__init__(STEP_MESSAGES.get(step, f"Eventbrite {step} failed"))

    @property
    def message(self) -> str:
        return str(self)


def to_utc_iso(date_str: str, time_str: str, timezone: str) -> str:
    """
    Convert a local date (YYYY-MM-DD) and time (HH:MM) in an IANA timezone
    to the UTC form Eventbrite expects (2025-03-01T08:30:00Z).

    Raises ValueError for an unknown timezone or an invalid date/time.
    """
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Invalid timezone: {timezone}")

    try:
        local = datetime.strptime(f"{date_str} {time_str}", "%Y-%m-%d %H:%M")
    except ValueError:
        raise ValueError(f"Invalid date/time: {date_str} {time_str}")

    return local.replace(tzinfo=zone).astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class EventDetails:
    """The admin's description of a meeting to publish."""

    event_name: str
    start_date: str
    start_time: str
    end_date: str
    end_time: str
    timezone: str
    currency: str
    is_free: bool = True
    online_event: bool = False
    description: str = ""
    venue_name: str | None = None
    address_1: str | None = None
    address_2: str | None = None
    city: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None
    capacity: int | None = None

    @property
    def has_venue(self) -> bool:
        if self.online_event:
            return False
        return any([self.venue_name, self.address_1, self.city, self.country])

    @property
    def ticket_quantity(self) -> int:
        if self.capacity and self.capacity > 0:
            return self.capacity
        return DEFAULT_TICKET_QUANTITY


class EventbriteClient:
    """Client for the Eventbrite v3 API, scoped to one organization."""

    def __init__(
        self,
        api_base: str,
        private_token: str,
        organization_id: str,
        timeout_seconds: float = 30.0,
        default_country: str = "AU",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.private_token = private_token
        self.organization_id = organization_id
        self.timeout = timeout_seconds
        self.default_country = default_country
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers={"Authorization": f"Bearer {self.private_token}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _post(
        self,
        client: httpx.AsyncClient,
        path: str,
        step: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await client.post(path, json=payload)
        except httpx.RequestError as e:
            logger.error(f"Eventbrite {step} request failed: {e}")
            raise EventbriteError(step, detail=str(e)) from e

        if response.status_code >= 400:
            logger.error(
                f"Eventbrite {step} failed: {response.status_code} {response.text[:500]}"
            )
            raise EventbriteError(step, response.status_code, response.text)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Eventbrite {step} returned invalid JSON")
            raise EventbriteError(step, response.status_code, "invalid JSON") from e

    def venue_payload(self, details: EventDetails) -> dict[str, Any]:
        address = {
            "address_1": details.address_1,
            "address_2": details.address_2,
            "city": details.city,
            "region": details.region,
            "postal_code": details.postal_code,
            "country": details.country or self.default_country,
        }
        return {
            "venue": {
                "name": details.venue_name or "Venue",
                "address": {k: v for k, v in address.items() if v},
            }
        }

    def event_payload(self, details: EventDetails, venue_id: str | None) -> dict[str, Any]:
        event: dict[str, Any] = {
            "name": {"html": details.event_name},
            "start": {
                "timezone": details.timezone,
                "utc": to_utc_iso(details.start_date, details.start_time, details.timezone),
            },
            "end": {
                "timezone": details.timezone,
                "utc": to_utc_iso(details.end_date, details.end_time, details.timezone),
            },
            "currency": details.currency,
            "online_event": details.online_event,
            "listed": True,
        }
        if venue_id:
            event["venue_id"] = venue_id
        if details.capacity and details.capacity > 0:
            event["capacity"] = details.capacity
        if details.description:
            event["description"] = {"html": details.description.replace("\n", "<br>")}
        return {"event": event}

    async def create_and_publish_event(self, details: EventDetails) -> dict[str, str]:
        """
        Run the full publishing flow.

        Returns {"eventId": ..., "eventUrl": ...}. Date/time problems raise
        ValueError before any request is sent.
        """
        # Validate times up front so nothing is created for a bad request
        to_utc_iso(details.start_date, details.start_time, details.timezone)
        to_utc_iso(details.end_date, details.end_time, details.timezone)

        async with self._client() as client:
            venue_id = None
            if details.has_venue:
                venue = await self._post(
                    client,
                    f"/organizations/{self.organization_id}/venues/",
                    "venue",
                    self.venue_payload(details),
                )
                venue_id = venue.get("id")

            event = await self._post(
                client,
                f"/organizations/{self.organization_id}/events/",
                "event",
                self.event_payload(details, venue_id),
            )
            event_id = event.get("id")
            if not event_id:
                logger.error("Eventbrite event response had no id")
                raise EventbriteError("event", detail="missing event id")
            logger.info(f"Created Eventbrite event {event_id}")

            await self._post(
                client,
                f"/events/{event_id}/ticket_classes/",
                "ticket_class",
                {
                    "ticket_class": {
                        "name": TICKET_CLASS_NAME,
                        "quantity_total": details.ticket_quantity,
                        "free": details.is_free,
                    }
                },
            )

            await self._post(client, f"/events/{event_id}/publish/", "publish")

        return {
            "eventId": event_id,
            "eventUrl": event.get("url") or f"https://www.eventbrite.com/e/{event_id}",
        }
