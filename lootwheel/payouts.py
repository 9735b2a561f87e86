import asyncio
import json
import logging

from curl_cffi.requests import AsyncSession, RequestsError

from lootwheel.config import PAYOUT_SERVICE_URL, PAYOUT_SERVICE_TOKEN, PAYOUT_TIMEOUT_SECONDS


logger = logging.getLogger(__name__)


class PayoutClient:
    """Hands a decided prize to the payout service that builds and signs the on-chain transfer."""

    def __init__(self, service_url: str | None = PAYOUT_SERVICE_URL, auth_token: str | None = PAYOUT_SERVICE_TOKEN,
                 timeout: int = PAYOUT_TIMEOUT_SECONDS):
        self.service_url = service_url
        self.auth_token = auth_token
        self.timeout = timeout
        self._session_instance: AsyncSession | None = None

    async def _get_session(self) -> AsyncSession:
        if self._session_instance is None:
            self._session_instance = AsyncSession(impersonate="chrome110")
        return self._session_instance

    async def _close_session_if_open(self):
        if self._session_instance:
            try:
                await self._session_instance.close()
            except Exception as e_close:
                logger.error(f"Error while closing AsyncSession: {e_close}")
            finally:
                self._session_instance = None

    async def _post(self, url: str, payload: dict) -> dict:
        session = await self._get_session()
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        try:
            response_obj = await session.post(url, headers=headers, json=payload, timeout=self.timeout)
            response_obj.raise_for_status()
            if response_obj.status_code == 204: # No Content
                return {"status": "success"}
            try:
                return response_obj.json()
            except json.JSONDecodeError as je_err:
                logger.error(f"Payout service JSONDecodeError for POST {url}: {je_err}. Body: {response_obj.text[:500]}")
                return {"status": "error", "message": "Invalid JSON in response"}
        except RequestsError as re_err:
            logger.error(f"Payout service RequestsError (POST {url}): {re_err}")
            return {"status": "error", "message": f"Payout service network/HTTP error: {re_err}"}

    async def send_reward(self, user_id: str, reward_description: str, destination_address: str | None = None,
                          reference: str | None = None) -> dict:
        if not self.service_url:
            return {"status": "error", "message": "Payout service not configured (missing PAYOUT_SERVICE_URL)."}
        payload = {"user_id": user_id, "reward": reward_description, "destination": destination_address,
                   "reference": reference}
        try:
            result = await self._post(f"{self.service_url.rstrip('/')}/payouts", payload)
            if isinstance(result, dict) and result.get("status") == "success":
                return {"status": "success", "details": result}
            message = result.get("message", "Payout error") if isinstance(result, dict) else "Unknown error"
            return {"status": "error", "message": f"Payout failed: {message}"}
        finally:
            await self._close_session_if_open()

    def execute(self, user_id: str, reward_description: str, destination_address: str | None = None,
                reference: str | None = None) -> dict:
        """Blocking wrapper for request handlers."""
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(self.send_reward(user_id, reward_description, destination_address, reference))
        finally:
            loop.close()
