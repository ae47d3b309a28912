"""
Attendance Bridge - orchestrates one sync run:
discovery -> terminal events -> aggregation -> cloud dispatch
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

import pytz

from attendance.aggregator import TimeThreshold, aggregate
from bridge_errors import BridgeError, SyncError
from config_loader import persist_terminal_host
from discovery.manager import TerminalDiscovery
from discovery.models import DiscoveryResult
from public_sync.sync_manager import SyncDispatcher
from terminal.client import TerminalClient

logger = logging.getLogger(__name__)

@dataclass
class SyncRunSummary:
    date: str
    address: str
    address_changed: bool
    raw_events: int
    records: int
    delivered: bool

class AttendanceBridge:
    """Runs the terminal-to-cloud attendance pipeline, once or on an interval"""

    def __init__(self, config: Dict[str, Any], config_path: Optional[str] = None,
                 discovery: Optional[TerminalDiscovery] = None,
                 dispatcher: Optional[SyncDispatcher] = None,
                 client_factory: Optional[Callable[[str], TerminalClient]] = None):
        self.config = config
        self.config_path = config_path
        self.discovery = discovery
        self.dispatcher = dispatcher or SyncDispatcher(config['cloud'])
        self.client_factory = client_factory or (
            lambda host: TerminalClient.from_config(self.config['terminal'], host=host)
        )
        self.timezone = pytz.timezone(config['sync']['timezone'])
        self.threshold = TimeThreshold(
            config['attendance']['timeout_hour'],
            config['attendance']['timeout_minute'],
        )

        self.running = False
        self._stop_event = asyncio.Event()
        self.stats = {
            'runs': 0,
            'failed_runs': 0,
            'records_delivered': 0,
            'address_changes': 0
        }

    # ================== SINGLE RUN ==================

    async def run_once(self, day: Optional[date] = None) -> SyncRunSummary:
        """Sync one local day (today in the site timezone unless given)"""
        day = day or datetime.now(self.timezone).date()
        date_str = day.isoformat()
        start_time = f"{date_str}T00:00:00"
        end_time = f"{date_str}T23:59:59"
        run_start = time.time()

        logger.info(f"[RUN] Attendance sync for {date_str}")

        resolution = await self._resolve_terminal()
        identity = resolution.identity
        logger.info(f"[RUN] Terminal {resolution.address}: model={identity.model or 'N/A'}, "
                    f"firmware={identity.firmware_version or 'N/A'}, serial={identity.serial_number or 'N/A'}")

        terminal = self.config['terminal']
        async with self.client_factory(resolution.address) as client:
            events = await client.get_events(
                start_time, end_time,
                page_size=terminal['page_size'],
                fetch_all_pages=terminal['fetch_all_pages'],
            )
        logger.info(f"[RUN] Pulled {len(events)} raw event(s) from terminal")

        records = aggregate(events, self.threshold)
        for record in records:
            logger.debug(f"[RUN]   adm_no={record.person_id} time_in={record.time_in} "
                         f"time_out={record.time_out or '-'}")

        result = await self.dispatcher.dispatch(records, date_str)
        if not result.delivered:
            raise SyncError(
                f"Cloud sync failed for {date_str}: {result.count}/{len(records)} record(s) delivered "
                f"(last status {result.status or 'network error'}). Check cloud.base_url and cloud.api_key",
                status=result.status,
                response=result.response,
            )

        self.stats['records_delivered'] += result.count
        logger.info(f"[RUN] Done in {time.time() - run_start:.1f}s: {result.count} record(s) sent")
        return SyncRunSummary(
            date=date_str,
            address=resolution.address,
            address_changed=resolution.changed,
            raw_events=len(events),
            records=len(records),
            delivered=True,
        )

    async def _resolve_terminal(self) -> DiscoveryResult:
        terminal = self.config['terminal']

        if not self.config['discovery']['enabled']:
            async with self.client_factory(terminal['host']) as client:
                identity = await client.get_device_info()
            return DiscoveryResult(address=terminal['host'], changed=False, identity=identity)

        discovery = self.discovery or TerminalDiscovery(terminal, self.config['discovery'])
        result = await discovery.resolve()
        if result.changed:
            self._apply_healed_address(result.address)
        return result

    def _apply_healed_address(self, address: str):
        """Use the healed address for the rest of this process and persist it"""
        previous = self.config['terminal'].get('host')
        self.config['terminal']['host'] = address
        self.stats['address_changes'] += 1
        logger.info(f"[HEAL] Terminal address changed {previous} -> {address}")

        if not self.config_path:
            return
        try:
            persist_terminal_host(self.config_path, address)
        except (OSError, ValueError) as e:
            logger.warning(f"[HEAL] Could not persist terminal.host: {e}. "
                           f"Continuing with {address} for this session")

    # ================== PERIODIC SERVICE ==================

    async def start(self):
        """Run immediately, then every sync.interval_minutes until stop()"""
        interval = self.config['sync']['interval_minutes'] * 60
        self.running = True
        self._stop_event.clear()
        logger.info(f"Attendance bridge started - syncing every {interval / 60:g} minute(s)")

        while self.running:
            self.stats['runs'] += 1
            try:
                await self.run_once()
            except BridgeError as e:
                self.stats['failed_runs'] += 1
                logger.error(f"Sync run failed: {e}")
            except Exception as e:
                self.stats['failed_runs'] += 1
                logger.exception(f"Unexpected sync run error: {e}")

            if not self.running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self):
        """Stop the periodic service"""
        logger.info("Stopping attendance bridge...")
        self.running = False
        self._stop_event.set()

        logger.info(
            f"Bridge stats - Runs: {self.stats['runs']}, Failed: {self.stats['failed_runs']}, "
            f"Records delivered: {self.stats['records_delivered']}, "
            f"Address changes: {self.stats['address_changes']}"
        )
