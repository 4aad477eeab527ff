"""Meeting link provisioning for virtual tours.

One provider class per conferencing platform, selected by the booking's
``platform``. When a provider has no credentials configured, or its API call
fails, a placeholder link in the provider's real URL format is returned
instead; provisioning never raises to the caller.

Credential keys (site_settings):
    GoogleMeet: GOOGLE_MEET_SERVICE_ACCOUNT_JSON, GOOGLE_MEET_CALENDAR_ID
    Zoom:       ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET
    Teams:      TEAMS_TENANT_ID, TEAMS_CLIENT_ID, TEAMS_CLIENT_SECRET
                (optional TEAMS_ORGANIZER_ID, defaults to "me")
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
import urllib.parse
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from jose import JWTError, jwt

from tour_booking.domain.enums import MeetingPlatform
from tour_booking.domain.errors import ExternalDegradedError
from tour_booking.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

ZOOM_TOKEN_URL = "https://zoom.us/oauth/token"
ZOOM_MEETINGS_URL = "https://api.zoom.us/v2/users/me/meetings"
MS_TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
MS_GRAPH_MEETINGS_URL = "https://graph.microsoft.com/v1.0/users/{organizer}/onlineMeetings"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"

_DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class MeetingDetails:
    title: str
    start_time: datetime
    duration_minutes: int
    attendee_email: Optional[str] = None
    attendee_name: Optional[str] = None

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_or_raise(provider: str, response: httpx.Response, step: str) -> dict:
    if response.status_code >= 400:
        raise ExternalDegradedError(provider, f"{step} returned HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise ExternalDegradedError(provider, f"{step} returned non-JSON body") from exc


# ---------------------------------------------------------------------------
# Placeholder generators
# ---------------------------------------------------------------------------


def placeholder_google_meet_link() -> str:
    """https://meet.google.com/abcd-efgh-ijkl"""
    segments = (
        "".join(secrets.choice(string.ascii_lowercase) for _ in range(4))
        for _ in range(3)
    )
    return f"https://meet.google.com/{'-'.join(segments)}"


def placeholder_zoom_link() -> str:
    """https://zoom.us/j/<12 digits>?pwd=<12 alphanumerics>"""
    meeting_id = secrets.randbelow(900_000_000_000) + 100_000_000_000
    alphabet = string.ascii_letters + string.digits
    password = "".join(secrets.choice(alphabet) for _ in range(12))
    return f"https://zoom.us/j/{meeting_id}?pwd={password}"


def placeholder_teams_link() -> str:
    """https://teams.microsoft.com/l/meetup-join/19:meeting_<uuid>@thread.v2/<uuid>"""
    thread_id = f"19:meeting_{uuid.uuid4()}@thread.v2"
    return f"https://teams.microsoft.com/l/meetup-join/{thread_id}/{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# Provider variants
# ---------------------------------------------------------------------------


class MeetingProvider:
    """Base provider: credential keys, placeholder, and the real create call."""

    platform: MeetingPlatform
    credential_keys: tuple[str, ...] = ()
    optional_keys: tuple[str, ...] = ()

    def placeholder(self) -> Optional[str]:
        raise NotImplementedError

    async def create_meeting(
        self,
        client: httpx.AsyncClient,
        details: MeetingDetails,
        credentials: dict[str, str],
    ) -> str:
        raise NotImplementedError


class PhoneProvider(MeetingProvider):
    """Phone tours need no link."""

    platform = MeetingPlatform.PHONE

    def placeholder(self) -> Optional[str]:
        return None


class ZoomProvider(MeetingProvider):
    platform = MeetingPlatform.ZOOM
    credential_keys = ("ZOOM_ACCOUNT_ID", "ZOOM_CLIENT_ID", "ZOOM_CLIENT_SECRET")

    def placeholder(self) -> str:
        return placeholder_zoom_link()

    async def create_meeting(self, client, details, credentials) -> str:
        token_resp = await client.post(
            ZOOM_TOKEN_URL,
            auth=(credentials["ZOOM_CLIENT_ID"], credentials["ZOOM_CLIENT_SECRET"]),
            data={
                "grant_type": "account_credentials",
                "account_id": credentials["ZOOM_ACCOUNT_ID"],
            },
        )
        access_token = _json_or_raise("Zoom", token_resp, "OAuth").get("access_token")
        if not access_token:
            raise ExternalDegradedError("Zoom", "OAuth response had no access_token")

        meeting_resp = await client.post(
            ZOOM_MEETINGS_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            json={
                "topic": details.title,
                "type": 2,  # scheduled meeting
                "start_time": _iso_utc(details.start_time),
                "duration": details.duration_minutes,
                "timezone": "UTC",
                "settings": {
                    "host_video": True,
                    "participant_video": True,
                    "join_before_host": False,
                    "mute_upon_entry": True,
                    "waiting_room": True,
                    "auto_recording": "none",
                },
            },
        )
        data = _json_or_raise("Zoom", meeting_resp, "meeting creation")
        join_url = data.get("join_url")
        if not join_url:
            raise ExternalDegradedError("Zoom", "meeting response had no join_url")
        logger.info("Zoom meeting created: id=%s", data.get("id"))
        return join_url


class TeamsProvider(MeetingProvider):
    platform = MeetingPlatform.TEAMS
    credential_keys = ("TEAMS_TENANT_ID", "TEAMS_CLIENT_ID", "TEAMS_CLIENT_SECRET")
    optional_keys = ("TEAMS_ORGANIZER_ID",)

    def placeholder(self) -> str:
        return placeholder_teams_link()

    async def create_meeting(self, client, details, credentials) -> str:
        token_resp = await client.post(
            MS_TOKEN_URL.format(tenant_id=credentials["TEAMS_TENANT_ID"]),
            data={
                "client_id": credentials["TEAMS_CLIENT_ID"],
                "client_secret": credentials["TEAMS_CLIENT_SECRET"],
                "scope": "https://graph.microsoft.com/.default",
                "grant_type": "client_credentials",
            },
        )
        access_token = _json_or_raise("Teams", token_resp, "OAuth").get("access_token")
        if not access_token:
            raise ExternalDegradedError("Teams", "OAuth response had no access_token")

        body = {
            "subject": details.title,
            "startDateTime": _iso_utc(details.start_time),
            "endDateTime": _iso_utc(details.end_time),
        }
        if details.attendee_email:
            body["participants"] = {
                "attendees": [
                    {
                        "identity": {
                            "user": {
                                "displayName": details.attendee_name or "Guest",
                                "id": details.attendee_email,
                            }
                        },
                        "upn": details.attendee_email,
                    }
                ]
            }

        organizer = credentials.get("TEAMS_ORGANIZER_ID") or "me"
        meeting_resp = await client.post(
            MS_GRAPH_MEETINGS_URL.format(organizer=urllib.parse.quote(organizer, safe="")),
            headers={"Authorization": f"Bearer {access_token}"},
            json=body,
        )
        data = _json_or_raise("Teams", meeting_resp, "meeting creation")
        join_url = data.get("joinUrl") or data.get("joinWebUrl")
        if not join_url:
            raise ExternalDegradedError("Teams", "meeting response had no joinUrl")
        logger.info("Teams meeting created: id=%s", data.get("id"))
        return join_url


class GoogleMeetProvider(MeetingProvider):
    platform = MeetingPlatform.GOOGLE_MEET
    credential_keys = ("GOOGLE_MEET_SERVICE_ACCOUNT_JSON", "GOOGLE_MEET_CALENDAR_ID")

    def placeholder(self) -> str:
        return placeholder_google_meet_link()

    def _service_account_assertion(self, service_account: dict) -> tuple[str, str]:
        """Sign the JWT bearer assertion for a service account. Returns (assertion, token_uri)."""
        token_uri = service_account.get("token_uri") or GOOGLE_TOKEN_URL
        issued_at = int(time.time())
        claims = {
            "iss": service_account["client_email"],
            "scope": GOOGLE_CALENDAR_SCOPE,
            "aud": token_uri,
            "iat": issued_at,
            "exp": issued_at + 3600,
        }
        headers = {"kid": service_account["private_key_id"]} if service_account.get("private_key_id") else None
        assertion = jwt.encode(claims, service_account["private_key"], algorithm="RS256", headers=headers)
        return assertion, token_uri

    async def create_meeting(self, client, details, credentials) -> str:
        try:
            service_account = json.loads(credentials["GOOGLE_MEET_SERVICE_ACCOUNT_JSON"])
            assertion, token_uri = self._service_account_assertion(service_account)
        except (ValueError, KeyError, JWTError) as exc:
            raise ExternalDegradedError("GoogleMeet", f"unusable service account: {exc}") from exc

        token_resp = await client.post(
            token_uri,
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": assertion,
            },
        )
        access_token = _json_or_raise("GoogleMeet", token_resp, "OAuth").get("access_token")
        if not access_token:
            raise ExternalDegradedError("GoogleMeet", "OAuth response had no access_token")

        event = {
            "summary": details.title,
            "start": {"dateTime": _iso_utc(details.start_time), "timeZone": "UTC"},
            "end": {"dateTime": _iso_utc(details.end_time), "timeZone": "UTC"},
            "conferenceData": {
                "createRequest": {
                    "requestId": f"tour-{uuid.uuid4().hex}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
            "attendees": [{"email": details.attendee_email}] if details.attendee_email else [],
        }
        calendar_id = urllib.parse.quote(credentials["GOOGLE_MEET_CALENDAR_ID"], safe="")
        event_resp = await client.post(
            GOOGLE_EVENTS_URL.format(calendar_id=calendar_id),
            params={"conferenceDataVersion": 1, "sendUpdates": "all"},
            headers={"Authorization": f"Bearer {access_token}"},
            json=event,
        )
        data = _json_or_raise("GoogleMeet", event_resp, "event creation")
        entry_points = (data.get("conferenceData") or {}).get("entryPoints") or []
        join_url = data.get("hangoutLink") or (entry_points[0].get("uri") if entry_points else None)
        if not join_url:
            raise ExternalDegradedError("GoogleMeet", "event response had no conference link")
        logger.info("Google Meet event created: id=%s", data.get("id"))
        return join_url


DEFAULT_PROVIDERS: dict[MeetingPlatform, MeetingProvider] = {
    provider.platform: provider
    for provider in (GoogleMeetProvider(), ZoomProvider(), TeamsProvider(), PhoneProvider())
}


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------


class MeetingProvisioner:
    """Obtains a join link for a platform, degrading to a placeholder."""

    def __init__(
        self,
        credential_store: CredentialStore,
        timeout: float = _DEFAULT_TIMEOUT,
        providers: dict[MeetingPlatform, MeetingProvider] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credential_store
        self._timeout = timeout
        self._providers = providers or DEFAULT_PROVIDERS
        self._transport = transport

    async def provision(
        self,
        platform: MeetingPlatform | str,
        title: str,
        start_time: datetime,
        duration_minutes: int,
        attendee_email: Optional[str] = None,
        attendee_name: Optional[str] = None,
    ) -> Optional[str]:
        """Return a join URL for *platform*, or None for phone tours.

        A platform with no registered provider also yields None.
        """
        try:
            platform = MeetingPlatform(platform)
            provider = self._providers[platform]
        except (ValueError, KeyError):
            logger.warning("No meeting provider for platform %r, no link provisioned", platform)
            return None
        if not provider.credential_keys:
            return provider.placeholder()

        details = MeetingDetails(
            title=title,
            start_time=start_time,
            duration_minutes=duration_minutes,
            attendee_email=attendee_email,
            attendee_name=attendee_name,
        )

        try:
            credentials = await self._credentials.get_many(
                provider.credential_keys + provider.optional_keys
            )
            if not all(credentials.get(key) for key in provider.credential_keys):
                logger.info("%s credentials not configured, using placeholder link", platform.value)
                return provider.placeholder()

            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                return await provider.create_meeting(client, details, credentials)
        except ExternalDegradedError as exc:
            logger.warning("Meeting provisioning degraded to placeholder: %s", exc)
        except httpx.TimeoutException:
            logger.warning("%s provisioning timed out after %.1fs, using placeholder", platform.value, self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("%s provisioning HTTP error, using placeholder: %s", platform.value, exc)
        except Exception:
            logger.exception("Unexpected %s provisioning failure, using placeholder", platform.value)
        return provider.placeholder()
