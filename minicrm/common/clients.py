"""Typed SDKs for the user and lead services, built on `ResilientClient`.

Methods return decoded JSON (dicts/lists); every call goes through the retry
loop and raises the typed errors from `minicrm.common.errors`.
"""

from typing import Any
from urllib.parse import quote

from minicrm.common.config import settings
from minicrm.common.http_client import CallConfig, ResilientClient


Headers = dict[str, str] | None


class UserClient:
    """Calls into the user service."""

    def __init__(self, http: ResilientClient) -> None:
        self.http = http

    @classmethod
    def from_settings(cls, **kwargs: Any) -> "UserClient":
        return cls(ResilientClient(CallConfig.from_settings(settings.user_service_url), target="user-service", **kwargs))

    async def list_users(self, headers: Headers = None) -> list[dict]:
        return await self.http.get("/users", headers=headers)

    async def get_user(self, user_id: str, headers: Headers = None) -> dict:
        return await self.http.get(f"/users/{quote(user_id, safe='')}", headers=headers)

    async def get_user_by_email(self, email: str, headers: Headers = None) -> dict:
        return await self.http.get(f"/users/email/{quote(email, safe='@')}", headers=headers)

    async def create_user(self, body: dict, headers: Headers = None) -> dict:
        return await self.http.post("/users", body, headers=headers)

    async def update_user(self, user_id: str, body: dict, headers: Headers = None) -> dict:
        return await self.http.patch(f"/users/{quote(user_id, safe='')}", body, headers=headers)

    async def delete_user(self, user_id: str, headers: Headers = None) -> None:
        return await self.http.delete(f"/users/{quote(user_id, safe='')}", headers=headers)

    async def close(self) -> None:
        await self.http.close()


class LeadClient:
    """Calls into the lead service."""

    def __init__(self, http: ResilientClient) -> None:
        self.http = http

    @classmethod
    def from_settings(cls, **kwargs: Any) -> "LeadClient":
        return cls(ResilientClient(CallConfig.from_settings(settings.lead_service_url), target="lead-service", **kwargs))

    async def list_leads(self, headers: Headers = None) -> list[dict]:
        return await self.http.get("/leads", headers=headers)

    async def list_leads_for_user(self, user_id: str, headers: Headers = None) -> list[dict]:
        return await self.http.get(f"/leads/user/{quote(user_id, safe='')}", headers=headers)

    async def get_lead(self, lead_id: str, headers: Headers = None) -> dict:
        return await self.http.get(f"/leads/{quote(lead_id, safe='')}", headers=headers)

    async def create_lead(self, body: dict, headers: Headers = None) -> dict:
        return await self.http.post("/leads", body, headers=headers)

    async def update_lead(self, lead_id: str, body: dict, headers: Headers = None) -> dict:
        return await self.http.patch(f"/leads/{quote(lead_id, safe='')}", body, headers=headers)

    async def assign_lead(self, lead_id: str, body: dict, headers: Headers = None) -> dict:
        return await self.http.patch(f"/leads/{quote(lead_id, safe='')}/assign", body, headers=headers)

    async def update_lead_status(self, lead_id: str, body: dict, headers: Headers = None) -> dict:
        return await self.http.patch(f"/leads/{quote(lead_id, safe='')}/status", body, headers=headers)

    async def delete_lead(self, lead_id: str, headers: Headers = None) -> None:
        return await self.http.delete(f"/leads/{quote(lead_id, safe='')}", headers=headers)

    async def close(self) -> None:
        await self.http.close()
