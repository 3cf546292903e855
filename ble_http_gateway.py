#!/usr/bin/env python3
"""
BLE HTTP Gateway
Captures Bluetooth Low Energy (BLE) advertisement packets and forwards selected
packets as JSON telemetry to an HTTP collector endpoint.

One request is in flight at a time. A watchdog releases a stuck request and
repeated failures put the gateway into a growing cooldown.
"""

__version__ = "1.0.0"

import argparse
import asyncio
import json
import logging
import random
import signal
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

import aiohttp

try:
    from bleak import BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
except ImportError:
    print("Error: bleak library not installed. Run: pip install bleak")
    sys.exit(1)


# ANSI color codes for cross-platform colored output
class Colors:
    """ANSI color codes for terminal output."""
    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


ICON_SUCCESS = f"{Colors.GREEN}✓{Colors.RESET}"
ICON_ERROR = f"{Colors.RED}✗{Colors.RESET}"
ICON_WARNING = f"{Colors.YELLOW}⚠{Colors.RESET}"
ICON_INFO = f"{Colors.BLUE}ℹ{Colors.RESET}"
ICON_PUBLISH = f"{Colors.CYAN}{Colors.BOLD}⬆{Colors.RESET}"
ICON_RECEIVE = f"{Colors.CYAN}⬇{Colors.RESET}"


# Constants for configuration defaults
DEFAULT_RATE_LIMIT_SEC = 5
DEFAULT_MAX_TRACKED_DEVICES = 50
DEFAULT_CLEANUP_INTERVAL_SEC = 300
DEFAULT_HTTP_TIMEOUT_SEC = 5
DEFAULT_LOG_LEVEL = 'WARNING'

# Delivery watchdog, must stay above the HTTP request timeout
WATCHDOG_TIMEOUT_SEC = 10
STATS_LOG_INTERVAL_SEC = 10.0
RUN_LOOP_INTERVAL_SEC = 1.0

# Backoff policy
BACKOFF_FAILURE_THRESHOLD = 3
BACKOFF_STEP_SEC = 5
BACKOFF_MAX_SEC = 60

HTTP_STATUS_OK = 200
NONCE_LIMIT = 2147483647
GATEWAY_MAC_SENTINEL = '00:00:00:00:00:00'

# Transport error codes reported to the completion callback
TRANSPORT_OK = 0
TRANSPORT_ERR_CONNECTION = -1
TRANSPORT_ERR_TIMEOUT = -2

# BLE AD structure types
BLE_TYPE_UUID16_COMPLETE = 0x03
BLE_TYPE_UUID128_INCOMPLETE = 0x06
BLE_TYPE_COMPLETE_LOCAL_NAME = 0x09
BLE_TYPE_TX_POWER = 0x0A
BLE_TYPE_SERVICE_DATA_16BIT = 0x16
BLE_TYPE_SERVICE_DATA_128BIT = 0x21
BLE_TYPE_MANUFACTURER_DATA = 0xFF
BLE_BASE_UUID_SUFFIX = '-0000-1000-8000-00805f9b34fb'

# Hex form of the manufacturer-data AD type, used by the allow-list scan
MANUFACTURER_DATA_MARKER = 'FF'


class GatewayError(Exception):
    """Base exception for all gateway errors."""


class TransportError(GatewayError):
    """The request could not be dispatched or the network layer failed."""

    def __init__(self, message: str, error_code: int = TRANSPORT_ERR_CONNECTION):
        self.error_code = error_code
        super().__init__(message)


class ApplicationError(GatewayError):
    """The collector answered with a non-success status."""

    def __init__(self, message: str, status_code: int, body: str = ''):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class WatchdogTimeout(GatewayError):
    """No completion was observed within the watchdog window."""

    def __init__(self, message: str, timeout_sec: float = WATCHDOG_TIMEOUT_SEC):
        self.timeout_sec = timeout_sec
        super().__init__(message)


class MalformedAdvertisement(GatewayError):
    """Advertisement without a usable address or payload."""


@dataclass(frozen=True)
class Advertisement:
    """Single BLE advertisement as delivered by the scanner."""
    address: str
    rssi: int
    payload: bytes


@dataclass(frozen=True)
class HttpResponse:
    """Status and body of a request that reached the collector."""
    code: int
    body: str = ''


@dataclass
class DeliveryState:
    """State of the single delivery slot."""
    in_flight: bool = False
    watchdog_handle: Any = None
    target_address: str = ''
    generation: int = 0


@dataclass
class BackoffState:
    """Consecutive failure count and end of the current cooldown."""
    consecutive_failures: int = 0
    cooldown_until: int = 0


@dataclass
class GatewayIdentity:
    """Hardware address reported as ``gw_mac`` in every request."""
    gateway_address: str = GATEWAY_MAC_SENTINEL


CompletionCallback = Callable[[Optional[HttpResponse], int], None]


class Transport(Protocol):
    """Outbound HTTP interface used by the delivery slot.

    ``post`` must return immediately and invoke ``callback`` exactly once,
    later, with ``(response, error_code)``.
    """

    def post(self, url: str, body: str, callback: CompletionCallback) -> None:
        ...

    async def close(self) -> None:
        ...


class TimerFacility(Protocol):
    """One-shot timer interface; satisfied by an asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Any:
        ...


def _unix_now() -> int:
    return int(time.time())


def encode_payload(payload: bytes) -> str:
    """Encode a raw advertising payload as uppercase hex without separators."""
    if not payload:
        raise MalformedAdvertisement("Advertisement payload is empty")
    return payload.hex().upper()


def normalize_address(address: str) -> str:
    """Return the canonical ``AA:BB:CC:DD:EE:FF`` form of a device address.

    Addresses without ``:`` separators get one inserted after every 2
    characters. ``-`` separated identifiers (CoreBluetooth UUIDs) are only
    upper-cased.
    """
    if not address:
        raise MalformedAdvertisement("Advertisement has no address")

    address = address.upper()
    if ':' in address or '-' in address:
        return address
    return ':'.join(address[i:i + 2] for i in range(0, len(address), 2))


def manufacturer_marker(manufacturer_id: int) -> str:
    """Hex marker of a manufacturer-data field: ``FF`` + company ID little-endian."""
    lo = manufacturer_id & 0xFF
    hi = (manufacturer_id >> 8) & 0xFF
    return f"{MANUFACTURER_DATA_MARKER}{lo:02X}{hi:02X}"


class AdvertisementFilter:
    """Manufacturer ID allow-list applied to the hex-encoded payload.

    This is a substring scan, not an AD structure parser: a payload that
    contains ``FF`` followed by the little-endian company ID anywhere is
    accepted.

    Uses __slots__ for memory efficiency on small gateways.
    """
    __slots__ = ('allow_list', 'markers')

    def __init__(self, allow_list: Optional[Iterable[int]] = None):
        self.allow_list = sorted(set(allow_list or ()))
        self.markers = [manufacturer_marker(mid) for mid in self.allow_list]

    def accepts_hex(self, payload_hex: str) -> bool:
        """Check an already encoded payload against the allow-list."""
        if not self.markers:
            return True
        return any(marker in payload_hex for marker in self.markers)

    def qualifies(self, advertisement: Advertisement) -> bool:
        """Check if the advertisement passes the allow-list."""
        if not self.markers:
            return True
        return self.accepts_hex(advertisement.payload.hex().upper())


def qualifies(advertisement: Advertisement, allow_list: Iterable[int]) -> bool:
    """Check a single advertisement against a manufacturer ID allow-list."""
    return AdvertisementFilter(allow_list).qualifies(advertisement)


def _uuid_to_le_bytes(uuid_str: str) -> bytes:
    """Convert a UUID string to little-endian bytes, 16-bit when it is a SIG UUID."""
    uuid_str = uuid_str.lower()
    if uuid_str.endswith(BLE_BASE_UUID_SUFFIX) and uuid_str.startswith('0000'):
        return bytes.fromhex(uuid_str[4:8])[::-1]
    return bytes.fromhex(uuid_str.replace('-', ''))[::-1]


def _append_ad_structure(packet: bytearray, ad_type: int, data: bytes) -> None:
    # Length = 1 (type) + data length
    packet.append(1 + len(data))
    packet.append(ad_type)
    packet.extend(data)


def reconstruct_advertising_data(advertisement: AdvertisementData) -> bytes:
    """Reconstruct BLE advertising data from the components parsed by bleak.

    bleak does not expose the raw advertising PDU, so the payload forwarded
    to the collector is rebuilt from name, TX power, service UUIDs,
    manufacturer data and service data.

    Returns raw BLE advertising packet as bytes.
    """
    packet = bytearray()

    if advertisement.local_name:
        _append_ad_structure(packet, BLE_TYPE_COMPLETE_LOCAL_NAME,
                             advertisement.local_name.encode('utf-8'))

    if advertisement.tx_power is not None:
        _append_ad_structure(packet, BLE_TYPE_TX_POWER,
                             bytes([advertisement.tx_power & 0xFF]))

    short_uuids = bytearray()
    for uuid_str in advertisement.service_uuids or []:
        uuid_bytes = _uuid_to_le_bytes(uuid_str)
        if len(uuid_bytes) == 2:
            short_uuids.extend(uuid_bytes)
        else:
            _append_ad_structure(packet, BLE_TYPE_UUID128_INCOMPLETE, uuid_bytes)
    if short_uuids:
        _append_ad_structure(packet, BLE_TYPE_UUID16_COMPLETE, bytes(short_uuids))

    for company_id, data in (advertisement.manufacturer_data or {}).items():
        # Company ID in little-endian
        _append_ad_structure(
            packet,
            BLE_TYPE_MANUFACTURER_DATA,
            bytes([company_id & 0xFF, (company_id >> 8) & 0xFF]) + bytes(data),
        )

    for uuid_str, data in (advertisement.service_data or {}).items():
        uuid_bytes = _uuid_to_le_bytes(uuid_str)
        ad_type = (BLE_TYPE_SERVICE_DATA_16BIT if len(uuid_bytes) == 2
                   else BLE_TYPE_SERVICE_DATA_128BIT)
        _append_ad_structure(packet, ad_type, uuid_bytes + bytes(data))

    return bytes(packet)


def advertisement_from_bleak(device: BLEDevice, advertisement: AdvertisementData) -> Advertisement:
    """Create an Advertisement from a bleak detection callback."""
    return Advertisement(
        address=device.address,
        rssi=advertisement.rssi,
        payload=reconstruct_advertising_data(advertisement),
    )


def build_telemetry(
    gateway_mac: str,
    device_address: str,
    rssi: int,
    payload_hex: str,
    timestamp: int,
    nonce: Optional[int] = None
) -> Dict[str, Any]:
    """Build the collector request body for one advertisement."""
    if nonce is None:
        nonce = random.randrange(NONCE_LIMIT)
    return {
        "data": {
            "coordinates": "",
            "timestamp": timestamp,
            "nonce": nonce,
            "gw_mac": gateway_mac,
            "tags": {
                device_address: {
                    "rssi": rssi,
                    "timestamp": timestamp,
                    "data": payload_hex
                }
            }
        }
    }


class DedupStore:
    """Per-device rate limiter with a periodically enforced capacity bound.

    Maps device address to the unix time of the last forwarded packet. The
    bound is only enforced by ``cleanup``, so the store may hold more than
    ``max_entries`` records between cleanup passes.
    """
    __slots__ = ('rate_limit_sec', 'max_entries', 'last_sent', 'logger')

    def __init__(
        self,
        rate_limit_sec: float = DEFAULT_RATE_LIMIT_SEC,
        max_entries: int = DEFAULT_MAX_TRACKED_DEVICES,
        logger: Optional[logging.Logger] = None
    ):
        self.rate_limit_sec = rate_limit_sec
        self.max_entries = max_entries
        self.last_sent: Dict[str, int] = {}
        self.logger = logger or logging.getLogger('BLEHttpGateway')

    def should_send(self, address: str, now: int) -> bool:
        """Check if the device is unknown or outside its rate-limit window."""
        last_sent = self.last_sent.get(address)
        if last_sent is None:
            return True
        return now - last_sent >= self.rate_limit_sec

    def record(self, address: str, now: int) -> None:
        """Mark the device as forwarded at ``now``."""
        self.last_sent[address] = now

    def cleanup(self, now: int) -> int:
        """Evict the oldest entries so at most ``max_entries`` remain.

        Returns the number of evicted entries.
        """
        to_remove = len(self.last_sent) - self.max_entries
        if to_remove <= 0:
            return 0

        # sorted() is stable: equal ages are evicted in discovery order
        oldest = sorted(
            self.last_sent.items(),
            key=lambda item: now - item[1],
            reverse=True
        )
        for address, _ in oldest[:to_remove]:
            del self.last_sent[address]

        self.logger.debug(f"Cleaned up {to_remove} old entries from rate-limit store")
        return to_remove

    def __len__(self) -> int:
        return len(self.last_sent)

    def __contains__(self, address: str) -> bool:
        return address in self.last_sent


class BackoffController:
    """Escalating cooldown after repeated delivery failures.

    Isolated errors are tolerated. Past the threshold each failure sets a
    cooldown of ``failures * 5`` seconds, capped at 60. Any success clears
    the counter and the cooldown.
    """

    def __init__(
        self,
        logger: logging.Logger,
        clock: Callable[[], int] = _unix_now,
        state: Optional[BackoffState] = None
    ):
        self.logger = logger
        self.clock = clock
        self.state = state or BackoffState()

    def on_success(self) -> None:
        if self.state.consecutive_failures:
            self.logger.info(
                f"{ICON_SUCCESS} Delivery recovered after "
                f"{self.state.consecutive_failures} failure(s)"
            )
        self.state.consecutive_failures = 0
        self.state.cooldown_until = 0

    def on_failure(self, now: Optional[int] = None) -> None:
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures
        if failures <= BACKOFF_FAILURE_THRESHOLD:
            return

        if now is None:
            now = self.clock()
        backoff_sec = min(BACKOFF_MAX_SEC, failures * BACKOFF_STEP_SEC)
        self.state.cooldown_until = now + backoff_sec
        self.logger.warning(
            f"{ICON_WARNING} BACKOFF: {failures} errors, backing off for {backoff_sec}s"
        )

    def is_in_cooldown(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = self.clock()
        if self.state.cooldown_until > now:
            return True
        self.state.cooldown_until = 0
        return False


class DeliverySlot:
    """Single in-flight HTTP delivery guarded by a watchdog.

    Every accepted send gets a new generation. The transport completion and
    the watchdog both carry the generation they were created for, and
    whichever runs first resolves the send; the other is ignored.
    """

    def __init__(
        self,
        url: str,
        transport: Transport,
        timers: TimerFacility,
        backoff: BackoffController,
        identity: GatewayIdentity,
        logger: logging.Logger,
        clock: Callable[[], int] = _unix_now,
        watchdog_timeout_sec: float = WATCHDOG_TIMEOUT_SEC,
        state: Optional[DeliveryState] = None
    ):
        self.url = url
        self.transport = transport
        self.timers = timers
        self.backoff = backoff
        self.identity = identity
        self.logger = logger
        self.clock = clock
        self.watchdog_timeout_sec = watchdog_timeout_sec
        self.state = state or DeliveryState()

        self.stats = {
            'accepted': 0,
            'rejected_busy': 0,
            'rejected_cooldown': 0,
            'succeeded': 0,
            'failed': 0,
            'watchdog_resets': 0,
            'stale_completions': 0
        }

    @property
    def busy(self) -> bool:
        return self.state.in_flight

    def try_send(self, address: str, rssi: int, payload_hex: str) -> bool:
        """Start a delivery if the slot is idle and no cooldown is active."""
        if self.state.in_flight:
            self.stats['rejected_busy'] += 1
            return False

        now = self.clock()
        if self.backoff.is_in_cooldown(now):
            self.stats['rejected_cooldown'] += 1
            return False

        body = json.dumps(
            build_telemetry(
                gateway_mac=self.identity.gateway_address,
                device_address=address,
                rssi=rssi,
                payload_hex=payload_hex,
                timestamp=now
            ),
            separators=(',', ':')
        )

        self.state.generation += 1
        generation = self.state.generation
        self.state.in_flight = True
        self.state.target_address = address
        self.state.watchdog_handle = self.timers.call_later(
            self.watchdog_timeout_sec, self._on_watchdog, generation
        )
        self.stats['accepted'] += 1

        self.logger.debug(f"{ICON_PUBLISH} POST {self.url} - Device: {address}, Payload: {body}")

        def on_complete(response: Optional[HttpResponse], error_code: int) -> None:
            self._on_complete(generation, response, error_code)

        try:
            self.transport.post(self.url, body, on_complete)
        except TransportError as e:
            on_complete(None, e.error_code)
            return False

        return True

    def _release(self) -> None:
        if self.state.watchdog_handle is not None:
            self.state.watchdog_handle.cancel()
            self.state.watchdog_handle = None
        self.state.in_flight = False

    def _on_complete(
        self,
        generation: int,
        response: Optional[HttpResponse],
        error_code: int
    ) -> None:
        if not self.state.in_flight or generation != self.state.generation:
            self.stats['stale_completions'] += 1
            self.logger.debug(f"Ignoring late HTTP completion for request #{generation}")
            return

        self._release()
        address = self.state.target_address

        error = classify_outcome(response, error_code, address)
        if error is None:
            self.stats['succeeded'] += 1
            self.logger.debug(f"{ICON_SUCCESS} HTTP {response.code} from server for {address}")
            if response.body:
                self.logger.debug(f"Response: {response.body}")
            self.backoff.on_success()
            return

        self.stats['failed'] += 1
        self.logger.error(f"{ICON_ERROR} {error}")
        self.backoff.on_failure()

    def _on_watchdog(self, generation: int) -> None:
        if not self.state.in_flight or generation != self.state.generation:
            return

        # The handle has fired, there is nothing left to cancel
        self.state.watchdog_handle = None
        self.state.in_flight = False
        self.stats['failed'] += 1
        self.stats['watchdog_resets'] += 1

        error = WatchdogTimeout(
            f"WATCHDOG: Resetting busy flag (HTTP timed out for {self.state.target_address})",
            timeout_sec=self.watchdog_timeout_sec
        )
        self.logger.warning(f"{ICON_WARNING} {error}")
        self.backoff.on_failure()


def classify_outcome(
    response: Optional[HttpResponse],
    error_code: int,
    address: str = ''
) -> Optional[GatewayError]:
    """Map a transport completion to the error it represents, or None on success."""
    if error_code != TRANSPORT_OK:
        return TransportError(f"HTTP ERROR: code {error_code} for {address}", error_code)
    if response is None:
        return TransportError(f"HTTP callback: no response object for {address}", error_code)
    if response.code != HTTP_STATUS_OK:
        return ApplicationError(
            f"HTTP ERROR {response.code} for {address}: {response.body or 'no body'}",
            status_code=response.code,
            body=response.body
        )
    return None


class AiohttpTransport:
    """Fire-and-forget HTTP POST over aiohttp with a completion callback.

    Each request runs as a task on the running event loop. The callback is
    invoked exactly once, from the loop, with either the response or a
    negative error code.
    """

    def __init__(
        self,
        logger: logging.Logger,
        timeout_sec: float = DEFAULT_HTTP_TIMEOUT_SEC,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.logger = logger
        self.timeout_sec = timeout_sec
        self._session = session
        self._owns_session = session is None
        self._tasks: Set[asyncio.Task] = set()

    def post(self, url: str, body: str, callback: CompletionCallback) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TransportError(f"Cannot dispatch request to {url}: {e}") from e

        if self._session is None:
            self._session = aiohttp.ClientSession()

        task = loop.create_task(self._post(url, body, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, url: str, body: str, callback: CompletionCallback) -> None:
        try:
            async with self._session.post(
                url,
                data=body,
                headers={"content-type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec)
            ) as resp:
                raw = await resp.read()
        except asyncio.TimeoutError:
            self.logger.debug(f"Request to {url} timed out after {self.timeout_sec}s")
            callback(None, TRANSPORT_ERR_TIMEOUT)
            return
        except aiohttp.ClientError as e:
            self.logger.debug(f"Request to {url} failed: {e}")
            callback(None, TRANSPORT_ERR_CONNECTION)
            return
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Unexpected error posting to {url}: {e}")
            callback(None, TRANSPORT_ERR_CONNECTION)
            return

        text = raw.decode(resp.charset or "utf-8", errors="replace")
        callback(HttpResponse(code=resp.status, body=text), TRANSPORT_OK)

    async def close(self) -> None:
        """Cancel pending requests and close the session if it is ours."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None


def get_gateway_mac_address() -> str:
    """Get the MAC address of the gateway device.

    Returns:
        MAC address as colon-separated uppercase hex pairs
    """
    try:
        mac = uuid.getnode()
        return normalize_address(f'{mac:012x}')
    except Exception:
        return GATEWAY_MAC_SENTINEL


def parse_manufacturer_ids(manufacturer_ids: Optional[list]) -> List[int]:
    """
    Parse manufacturer IDs from config, supporting both decimal and hexadecimal formats.

    Args:
        manufacturer_ids: List of manufacturer IDs (can be int or hex string like "0x0499")

    Returns:
        Sorted list of integer manufacturer IDs, empty to accept all devices
    """
    if not manufacturer_ids:
        return []

    parsed_ids = set()
    for mid in manufacturer_ids:
        if isinstance(mid, bool):
            raise ValueError(f"Invalid manufacturer ID type: {type(mid)}. Expected int or hex string")
        if isinstance(mid, str):
            try:
                parsed_ids.add(int(mid, 16))
            except ValueError:
                raise ValueError(f"Invalid manufacturer ID format: {mid}. Use decimal (1177) or hex ('0x0499')")
        elif isinstance(mid, int):
            parsed_ids.add(mid)
        else:
            raise ValueError(f"Invalid manufacturer ID type: {type(mid)}. Expected int or hex string")

    for mid in parsed_ids:
        if not 0 <= mid <= 0xFFFF:
            raise ValueError(f"Manufacturer ID out of range (0-0xFFFF): {mid:#x}")

    return sorted(parsed_ids)


class BluetoothGateway:
    """Main gateway application: scanner in, filter, rate limit, HTTP out."""

    def __init__(
        self,
        config: dict,
        logger: logging.Logger,
        transport: Optional[Transport] = None,
        loop: Optional[TimerFacility] = None,
        clock: Callable[[], int] = _unix_now,
        scanner_factory: Optional[Callable[..., Any]] = None
    ):
        self.config = config
        self.logger = logger
        self.clock = clock
        self.loop = loop
        self.scanner_factory = scanner_factory or BleakScanner
        self.scanner = None

        self.url = config['endpoint_url']
        self.cleanup_interval_sec = config.get('cleanup_interval_sec', DEFAULT_CLEANUP_INTERVAL_SEC)

        self.identity = GatewayIdentity()
        self._identity_future: Optional[asyncio.Future] = None

        self.payload_filter = AdvertisementFilter(
            parse_manufacturer_ids(config.get('manufacturer_id_whitelist', []))
        )

        self.dedup = DedupStore(
            rate_limit_sec=config.get('rate_limit_sec', DEFAULT_RATE_LIMIT_SEC),
            max_entries=config.get('max_tracked_devices', DEFAULT_MAX_TRACKED_DEVICES),
            logger=logger
        )

        self.backoff = BackoffController(logger=logger, clock=clock)

        self.transport = transport or AiohttpTransport(
            logger=logger,
            timeout_sec=config.get('http_timeout_sec', DEFAULT_HTTP_TIMEOUT_SEC)
        )

        # The slot gets its timer facility in start(), once the loop is known
        self.delivery: Optional[DeliverySlot] = None
        if loop is not None:
            self.delivery = self._create_delivery_slot(loop)

        self._cleanup_handle = None
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None
        self.stats = {
            'advertisements_seen': 0,
            'malformed': 0,
            'messages_filtered': 0,
            'rate_limited': 0,
            'dropped_busy': 0,
            'messages_sent': 0,
            'cleanup_evictions': 0
        }

    def _create_delivery_slot(self, timers: TimerFacility) -> DeliverySlot:
        return DeliverySlot(
            url=self.url,
            transport=self.transport,
            timers=timers,
            backoff=self.backoff,
            identity=self.identity,
            logger=self.logger,
            clock=self.clock
        )

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, shutting down gracefully...")
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _set_identity(self, address: str) -> None:
        self.identity.gateway_address = address
        self.logger.info(f"{ICON_INFO} Gateway MAC: {address}")

    def resolve_identity(self) -> None:
        """Resolve the gateway MAC without blocking the pipeline.

        A configured ``gateway_mac`` is applied immediately. Otherwise the
        host MAC is looked up in the default executor and the sentinel is
        reported until the lookup finishes.
        """
        configured_mac = self.config.get('gateway_mac')
        if configured_mac:
            self._set_identity(normalize_address(configured_mac))
            return

        def on_resolved(future: asyncio.Future) -> None:
            if future.cancelled():
                return
            if future.exception() is not None:
                self.logger.warning(
                    f"{ICON_WARNING} Could not resolve gateway MAC: {future.exception()}"
                )
                return
            self._set_identity(future.result())

        self._identity_future = self.loop.run_in_executor(None, get_gateway_mac_address)
        self._identity_future.add_done_callback(on_resolved)

    def _schedule_cleanup(self) -> None:
        self._cleanup_handle = self.loop.call_later(self.cleanup_interval_sec, self._cleanup_tick)

    def _cleanup_tick(self) -> None:
        self.stats['cleanup_evictions'] += self.dedup.cleanup(self.clock())
        self._schedule_cleanup()

    def handle_advertisement(self, advertisement: Advertisement) -> bool:
        """Run one advertisement through the pipeline.

        Returns True if a delivery was started for it.
        """
        self.stats['advertisements_seen'] += 1

        try:
            payload_hex = encode_payload(advertisement.payload)
            address = normalize_address(advertisement.address)
        except MalformedAdvertisement as e:
            self.stats['malformed'] += 1
            self.logger.debug(f"Dropped advertisement: {e}")
            return False

        if not self.payload_filter.accepts_hex(payload_hex):
            self.stats['messages_filtered'] += 1
            return False

        now = self.clock()
        if not self.dedup.should_send(address, now):
            self.stats['rate_limited'] += 1
            return False

        # Rate limiting counts attempts, not confirmed deliveries
        self.dedup.record(address, now)

        self.logger.debug(
            f"{ICON_RECEIVE} {address} rssi={advertisement.rssi} len={len(payload_hex) // 2}"
        )

        if self.delivery is None:
            self.stats['dropped_busy'] += 1
            self.logger.debug(f"Gateway not started, dropped advertisement from {address}")
            return False

        if not self.delivery.try_send(address, advertisement.rssi, payload_hex):
            self.stats['dropped_busy'] += 1
            return False

        self.stats['messages_sent'] += 1
        return True

    def _detection_callback(
        self,
        device: BLEDevice,
        advertisement: AdvertisementData
    ):
        """Handle a bleak detection callback."""
        try:
            self.handle_advertisement(advertisement_from_bleak(device, advertisement))
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error processing device {device.address}: {e}")

    async def start(self) -> None:
        """Resolve identity, start scanning and schedule the cleanup pass."""
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        if self.delivery is None:
            self.delivery = self._create_delivery_slot(self.loop)

        self.resolve_identity()

        bluez_args = {}
        if self.config.get('bluetooth_adapter'):
            bluez_args['adapter'] = self.config['bluetooth_adapter']
            self.logger.info(f"Using Bluetooth adapter: {self.config['bluetooth_adapter']}")

        self.scanner = self.scanner_factory(
            detection_callback=self._detection_callback,
            scanning_mode="passive",
            bluez=bluez_args if bluez_args else None
        )
        self.logger.info("Starting continuous BLE scanning...")
        await self.scanner.start()

        self._schedule_cleanup()
        self.running = True
        self.logger.info(f"{ICON_SUCCESS} BLE gateway ready, POST to {self.url}")

    def stop(self) -> None:
        """Request the run loop to exit."""
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop scanning, cancel the cleanup timer and close the transport."""
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None
        if self.scanner is not None:
            await self.scanner.stop()
            self.scanner = None
        await self.transport.close()
        self.logger.info("Gateway stopped")
        self.logger.info(f"Final stats: {self.all_stats()}")

    def all_stats(self) -> Dict[str, int]:
        stats = dict(self.stats)
        if self.delivery is not None:
            stats.update({f"delivery_{k}": v for k, v in self.delivery.stats.items()})
        stats['tracked_devices'] = len(self.dedup)
        return stats

    async def run(self):
        """Run the gateway until stopped."""
        self.logger.info("Starting BLE HTTP Gateway")
        self.logger.info(f"Endpoint: {self.url}")
        self.logger.info(
            f"Manufacturer filter: "
            f"{[f'{mid:#06x}' for mid in self.payload_filter.allow_list] or 'all devices'}"
        )
        self.logger.info(
            f"Rate limit: {self.dedup.rate_limit_sec}s, "
            f"max tracked devices: {self.dedup.max_entries}, "
            f"cleanup every {self.cleanup_interval_sec}s"
        )

        self._stop_event = asyncio.Event()
        self._setup_signal_handlers()

        try:
            await self.start()

            last_stats_time = time.time()
            while self.running:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=RUN_LOOP_INTERVAL_SEC)
                except asyncio.TimeoutError:
                    pass

                current_time = time.time()
                if current_time - last_stats_time >= STATS_LOG_INTERVAL_SEC:
                    self.logger.debug(f"Stats - {self.all_stats()}")
                    last_stats_time = current_time

        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error in scanning loop: {e}", exc_info=True)
        finally:
            await self.shutdown()


def _require_number(config: dict, key: str, minimum: float, allow_equal: bool) -> None:
    if key not in config:
        return
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got: {value}")
    if value < minimum or (value == minimum and not allow_equal):
        bound = f">= {minimum}" if allow_equal else f"> {minimum}"
        raise ValueError(f"{key} must be {bound}, got: {value}")


def validate_config(config: dict) -> dict:
    """Validate configuration values, raising ValueError on the first problem."""
    url = config.get('endpoint_url')
    if not url or not isinstance(url, str):
        raise ValueError("Configuration must include 'endpoint_url'")
    if not url.startswith(('http://', 'https://')):
        raise ValueError(f"endpoint_url must be an http:// or https:// URL, got: {url}")

    if 'debug' in config and not isinstance(config['debug'], bool):
        raise ValueError(f"debug must be a boolean, got: {config['debug']}")

    whitelist = config.get('manufacturer_id_whitelist', [])
    if not isinstance(whitelist, list):
        raise ValueError(f"manufacturer_id_whitelist must be a list, got: {whitelist}")
    parse_manufacturer_ids(whitelist)

    _require_number(config, 'rate_limit_sec', 0, allow_equal=True)
    _require_number(config, 'cleanup_interval_sec', 0, allow_equal=False)
    _require_number(config, 'http_timeout_sec', 0, allow_equal=False)

    if 'max_tracked_devices' in config:
        size = config['max_tracked_devices']
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValueError(f"max_tracked_devices must be a positive integer, got: {size}")

    http_timeout = config.get('http_timeout_sec', DEFAULT_HTTP_TIMEOUT_SEC)
    if http_timeout >= WATCHDOG_TIMEOUT_SEC:
        raise ValueError(
            f"http_timeout_sec must be below the {WATCHDOG_TIMEOUT_SEC}s watchdog, got: {http_timeout}"
        )

    gateway_mac = config.get('gateway_mac')
    if gateway_mac is not None and (not isinstance(gateway_mac, str) or not gateway_mac):
        raise ValueError(f"gateway_mac must be a non-empty string, got: {gateway_mac}")

    return config


def load_config(config_path: str) -> dict:
    """Load and validate configuration from JSON file."""
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Configuration file not found: {config_path}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in configuration file: {e}") from e

    if not isinstance(config, dict):
        raise ValueError("Configuration file must contain a JSON object")

    return validate_config(config)


def setup_logging(log_level: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    """Configure logging with appropriate level.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger('BLEHttpGateway')

    numeric_level = getattr(logging, log_level.upper(), logging.WARNING)
    logger.setLevel(numeric_level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='BLE advertisement gateway for HTTP collectors',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with config file (WARNING level)
  %(prog)s -c config.json

  # Run with DEBUG level logging
  %(prog)s -c config.json --log-level DEBUG

Configuration file format: See config.example.json
        """
    )

    parser.add_argument(
        '-c', '--config',
        required=True,
        help='Path to configuration JSON file'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help=f'Set logging level (default: {DEFAULT_LOG_LEVEL}, DEBUG if "debug" is set in config)'
    )

    args = parser.parse_args()

    logger = setup_logging(log_level=args.log_level or DEFAULT_LOG_LEVEL)

    try:
        logger.info(f"Loading configuration from: {args.config}")
        config = load_config(args.config)

        if args.log_level is None and config.get('debug'):
            setup_logging(log_level='DEBUG')

        gateway = BluetoothGateway(config, logger)
        asyncio.run(gateway.run())

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=(logger.level == logging.DEBUG))
        sys.exit(1)


if __name__ == '__main__':
    main()
