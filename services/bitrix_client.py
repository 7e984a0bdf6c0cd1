# services/bitrix_client.py
import logging

import requests

from services.bitrix_constants import PAGE_SIZE
from services.config_service import normalize_webhook_url
from services.exceptions import BitrixAPIError

logger = logging.getLogger(__name__)

CONNECTION_ERROR = "Ошибка подключения к Bitrix24"
FORMAT_ERROR = "Неверный формат ответа от Bitrix24"


class BitrixClient:
    """
    Thin client for a Bitrix24 inbound webhook.

    Attributes:
        webhook_url (str): Base webhook URL, e.g. https://portal.bitrix24.kz/rest/1/abc123/
        timeout (float): Per-request timeout in seconds, None for the transport default.
    """

    def __init__(self, webhook_url: str, http_client=None, timeout=None):
        """
        Args:
            webhook_url (str): Inbound webhook URL from the Bitrix24 portal.
            http_client: Object with a requests-compatible ``post``; defaults to ``requests``.
            timeout (float): Optional request timeout.
        """
        self.webhook_url = normalize_webhook_url(webhook_url)
        if not self.webhook_url:
            raise ValueError("Bitrix24 webhook URL is not configured")
        self.http_client = http_client or requests
        self.timeout = timeout

    def _request(self, method: str, params: dict = None) -> dict:
        url = f"{self.webhook_url}{method}.json"
        try:
            response = self.http_client.post(url, json=params or {}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Bitrix24 request {method} failed: {e}")
            raise BitrixAPIError(CONNECTION_ERROR, method=method) from e

        if not response.ok:
            logger.error(f"Bitrix24 {method} returned HTTP {response.status_code}")
            raise BitrixAPIError(CONNECTION_ERROR, method=method, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"Bitrix24 {method} returned a non-JSON body")
            raise BitrixAPIError(FORMAT_ERROR, method=method) from e

        if not isinstance(payload, dict):
            raise BitrixAPIError(FORMAT_ERROR, method=method)
        if payload.get("error"):
            description = payload.get("error_description") or payload["error"]
            logger.error(f"Bitrix24 {method} error: {description}")
            raise BitrixAPIError(f"Bitrix24: {description}", method=method)
        if "result" not in payload or payload["result"] is None:
            raise BitrixAPIError(FORMAT_ERROR, method=method)
        return payload

    def call(self, method: str, params: dict = None):
        """
        Call a REST method and return its ``result``.

        Raises:
            BitrixAPIError: On transport failure, non-OK status, an ``error``
                field, or a payload without ``result``.
        """
        return self._request(method, params)["result"]

    def list_all(self, method: str, params: dict = None, page_size: int = PAGE_SIZE, items_key: str = None) -> list:
        """
        Fetch every page of a list method.

        Bitrix24 list methods return ``page_size`` records per call plus a
        ``next`` offset while more remain. Paging stops on a short page or
        when ``next`` is absent.

        Args:
            method (str): e.g. "crm.deal.list".
            params (dict): Filter/select parameters; ``start`` is managed here.
            page_size (int): Page length the portal uses.
            items_key (str): Key of the list inside ``result`` for methods that
                wrap it, e.g. "tasks" for tasks.task.list.

        Returns:
            list: All records across pages.
        """
        records = []
        start = 0
        while True:
            query = dict(params or {})
            query["start"] = start
            payload = self._request(method, query)

            result = payload["result"]
            if items_key and isinstance(result, dict):
                batch = result.get(items_key) or []
            else:
                batch = result or []
            records.extend(batch)

            next_start = payload.get("next")
            if len(batch) < page_size or next_start is None:
                break
            start = next_start

        logger.info(f"Fetched {len(records)} records from {method}")
        return records
