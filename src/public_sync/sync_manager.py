"""
Attendance cloud sync
Posts aggregated records to the remote attendance service with bounded retry
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from attendance.aggregator import AggregatedRecord
from http_helper import create_cloud_session

logger = logging.getLogger(__name__)

@dataclass
class DispatchResult:
    delivered: bool
    count: int
    response: Any = None
    status: Optional[int] = None
    attempts: int = 0

class SyncDispatcher:
    """Delivers one day's attendance batch to the cloud service"""

    def __init__(self, config: Dict[str, Any], session: Optional[aiohttp.ClientSession] = None):
        self.school_code = config['school_code']
        self.url = f"{config['base_url'].rstrip('/')}{config.get('attendance_endpoint', '/attendance/sync')}"
        self.api_key = config['api_key']
        self.timeout_seconds = config.get('timeout_seconds', 15)
        self.batch_size = max(1, int(config.get('batch_size', 50)))
        self.retry_attempts = max(1, int(config.get('retry_attempts', 3)))
        self.retry_delay = config.get('retry_delay_seconds', 2)
        self.ssl_verify = config.get('ssl_verify', True)
        self.ca_cert_path = config.get('ca_cert_path')
        self.session = session

    def _headers(self) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {self.api_key}",
            'X-Source': 'attendance-bridge',
        }

    async def dispatch(self, records: List[AggregatedRecord], date: str) -> DispatchResult:
        """
        POST {school_code, date, attendance[]} in batches of `batch_size`.
        Delivered only if every batch is accepted; stops at the first failed batch.
        """
        if not records:
            logger.info("[SYNC] No records to sync - skipping cloud POST")
            return DispatchResult(delivered=True, count=0)

        logger.info(f"[SYNC] Syncing {len(records)} record(s) for {date} to POST {self.url}")

        owns_session = self.session is None
        session = self.session or create_cloud_session(self.timeout_seconds, self.ssl_verify, self.ca_cert_path)
        sent = 0
        result = DispatchResult(delivered=True, count=0)
        try:
            for start in range(0, len(records), self.batch_size):
                batch = records[start:start + self.batch_size]
                payload = {
                    'school_code': self.school_code,
                    'date': date,
                    'attendance': [record.to_payload() for record in batch],
                }
                result = await self._post_with_retry(session, payload)
                if not result.delivered:
                    logger.error(f"[SYNC] Batch {start // self.batch_size + 1} failed - "
                                 f"{sent}/{len(records)} record(s) delivered")
                    result.count = sent
                    return result
                sent += len(batch)
        finally:
            if owns_session:
                await session.close()

        logger.info(f"[SYNC] Cloud sync successful: {sent} record(s) delivered")
        result.count = sent
        return result

    async def _post_with_retry(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> DispatchResult:
        """Sequential attempts; 4xx aborts at once, 5xx and network errors are retried"""
        last_status = None
        last_body = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with session.post(self.url, json=payload, headers=self._headers()) as response:
                    body = await self._read_body(response)
                    if 200 <= response.status < 300:
                        logger.info(f"[SYNC] Batch accepted (HTTP {response.status}) on attempt {attempt}")
                        return DispatchResult(True, len(payload['attendance']), body, response.status, attempt)

                    last_status, last_body = response.status, body
                    logger.warning(f"[SYNC] Attempt {attempt}/{self.retry_attempts} failed: HTTP {response.status}")
                    if 400 <= response.status < 500:
                        # Client errors will not self-correct
                        logger.error(f"[SYNC] Client error - aborting retries: {str(body)[:300]}")
                        return DispatchResult(False, 0, body, response.status, attempt)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_status, last_body = None, None
                logger.warning(f"[SYNC] Attempt {attempt}/{self.retry_attempts} failed (network error): {e}")

            if attempt < self.retry_attempts:
                logger.info(f"[SYNC] Retrying in {self.retry_delay}s...")
                await asyncio.sleep(self.retry_delay)

        logger.error("[SYNC] All retry attempts failed")
        return DispatchResult(False, 0, last_body, last_status, self.retry_attempts)

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        try:
            return json.loads(text) if text else None
        except ValueError:
            return text
