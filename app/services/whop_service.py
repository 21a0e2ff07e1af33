"""
Whop Service - thin async client for the Whop REST API.
"""

import logging
from typing import Optional, Dict, Any, List

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class WhopService:
    """
    Whop API client. Every call logs failures and returns None (or []),
    callers fall back to header data or placeholders.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.whop_api_key
        self.base_url = (base_url or settings.whop_api_base_url).rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if not self.configured:
            logger.debug(f"Whop API not configured, skipping GET {path}")
            return None

        async with httpx.AsyncClient(timeout=30.0) as client:
            try:
                response = await client.get(
                    f"{self.base_url}{path}",
                    headers=self._headers(),
                    params=params,
                )
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"Whop API error on {path}: {e.response.status_code} - {e.response.text}")
                return None
            except Exception as e:
                logger.error(f"Whop API request to {path} failed: {e}")
                return None

    async def get_experience(self, experience_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/experiences/{experience_id}")

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/users/{user_id}")

    async def check_access(self, user_id: str, experience_id: str) -> Optional[str]:
        """Access level ("admin", "customer", "no_access") or None when unknown."""
        data = await self._get(f"/users/{user_id}/access/{experience_id}")
        if not data:
            return None
        return data.get("access_level") or data.get("accessLevel")

    async def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/plans/{plan_id}")

    async def list_company_products(self, company_id: str) -> List[Dict[str, Any]]:
        data = await self._get("/products", params={"company_id": company_id})
        if not data:
            return []
        return data.get("data") or []
