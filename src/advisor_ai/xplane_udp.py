from __future__ import annotations

import asyncio
import socket
import struct
import time
from collections import deque
from contextlib import suppress
from typing import Final

from advisor_ai.errors import InvalidInput
from advisor_ai.telemetry import parse_flight_state
from advisor_ai.types import FlightState, TelemetrySource

RREF_RESPONSE_PREFIX: Final[bytes] = b"RREF,"
RREF_REQUEST_HEADER: Final[bytes] = b"RREF\x00"
METERS_TO_FEET: Final[float] = 3.28084

DATAREF_BY_KEY: dict[str, str] = {
    "gear_deploy_ratio": "sim/flightmodel2/gear/deploy_ratio[0]",
    "flap_handle_ratio": "sim/cockpit2/controls/flap_handle_deploy_ratio",
    "flap_detents": "sim/aircraft/controls/acf_flap_detents",
    "speedbrake_ratio": "sim/cockpit2/controls/speedbrake_ratio",
    "indicated_airspeed_kt": "sim/cockpit2/gauges/indicators/airspeed_kts_pilot",
    "angle_of_attack_deg": "sim/flightmodel2/misc/AoA_angle_degrees",
    "y_agl_m": "sim/flightmodel/position/y_agl",
    "vertical_speed_fpm": "sim/flightmodel/position/vh_ind_fpm",
    "ap_servos_on": "sim/cockpit2/autopilot/servos_on",
    "ap_heading_status": "sim/cockpit2/autopilot/heading_status",
    "ap_nav_status": "sim/cockpit2/autopilot/nav_status",
    "ap_altitude_hold_status": "sim/cockpit2/autopilot/altitude_hold_status",
    "ap_vvi_status": "sim/cockpit2/autopilot/vvi_status",
    "ap_approach_status": "sim/cockpit2/autopilot/approach_status",
    "ap_speed_status": "sim/cockpit2/autopilot/speed_status",
}

AUTOPILOT_MODE_KEYS: dict[str, str] = {
    "ap_heading_status": "HDG",
    "ap_nav_status": "NAV",
    "ap_altitude_hold_status": "ALT",
    "ap_vvi_status": "VS",
    "ap_approach_status": "APR",
    "ap_speed_status": "SPD",
}

INDEX_BY_KEY: dict[str, int] = {key: idx for idx, key in enumerate(DATAREF_BY_KEY, start=1)}
KEY_BY_INDEX: dict[int, str] = {idx: key for key, idx in INDEX_BY_KEY.items()}

REQUIRED_KEYS: frozenset[str] = frozenset(
    {"gear_deploy_ratio", "indicated_airspeed_kt", "angle_of_attack_deg"}
)


def build_rref_request_packet(freq_hz: int, index: int, dataref: str) -> bytes:
    encoded = dataref.encode("ascii", errors="ignore")[:399]
    payload = (encoded + b"\x00").ljust(400, b"\x00")
    return struct.pack("<5sii400s", RREF_REQUEST_HEADER, freq_hz, index, payload)


def parse_rref_datagram(payload: bytes) -> dict[int, float]:
    if not payload.startswith(RREF_RESPONSE_PREFIX):
        return {}
    body = payload[len(RREF_RESPONSE_PREFIX) :]
    out: dict[int, float] = {}
    for offset in range(0, len(body) - len(body) % 8, 8):
        index, value = struct.unpack_from("<if", body, offset)
        out[index] = float(value)
    return out


def flight_state_from_datarefs(values: dict[str, float], timestamp_sec: float) -> FlightState:
    missing = REQUIRED_KEYS - values.keys()
    if missing:
        raise InvalidInput(f"Missing datarefs: {', '.join(sorted(missing))}.")

    detents = max(1, int(round(values.get("flap_detents", 1.0))))
    flap_ratio = min(1.0, max(0.0, values.get("flap_handle_ratio", 0.0)))
    # Negative speedbrake ratio means armed, not extended.
    spoiler_ratio = min(1.0, max(0.0, values.get("speedbrake_ratio", 0.0)))

    modes: set[str] = set()
    if values.get("ap_servos_on", 0.0) >= 0.5:
        modes.add("AP")
        for key, mode in AUTOPILOT_MODE_KEYS.items():
            # Status 2 is captured/engaged, 1 is armed.
            if values.get(key, 0.0) >= 2.0:
                modes.add(mode)

    y_agl_m = values.get("y_agl_m")
    return parse_flight_state(
        {
            "timestamp_sec": timestamp_sec,
            "gear": values["gear_deploy_ratio"],
            "flap_index": int(round(flap_ratio * detents)),
            "spoiler_ratio": spoiler_ratio,
            "autopilot_modes": sorted(modes),
            "indicated_airspeed_kt": max(0.0, values["indicated_airspeed_kt"]),
            "angle_of_attack_deg": values["angle_of_attack_deg"],
            "altitude_agl_ft": y_agl_m * METERS_TO_FEET if y_agl_m is not None else None,
            "vertical_speed_fpm": values.get("vertical_speed_fpm"),
        }
    )


class XPlaneUdpClient(TelemetrySource):
    def __init__(
        self,
        *,
        xplane_host: str,
        xplane_port: int,
        local_port: int,
        rref_hz: int,
        local_host: str = "0.0.0.0",
        max_buffered: int = 2048,
    ) -> None:
        self._xplane_addr = (xplane_host.strip(), int(xplane_port))
        self._local_host = local_host
        self._local_port = local_port
        self._rref_hz = rref_hz

        self._socket: socket.socket | None = None
        self._rx_task: asyncio.Task[None] | None = None
        self._resubscribe_task: asyncio.Task[None] | None = None
        self._running = False

        self._values: dict[str, float] = {}
        self._pending: deque[FlightState] = deque(maxlen=max_buffered)
        self._rejected = 0

    @property
    def exhausted(self) -> bool:
        return False

    @property
    def rejected(self) -> int:
        return self._rejected

    async def start(self) -> None:
        if self._running:
            return
        if not self._xplane_addr[0] or self._xplane_addr[1] <= 0:
            raise RuntimeError("X-Plane UDP host and port must be configured.")

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self._local_host, self._local_port))
        sock.setblocking(False)

        self._socket = sock
        self._running = True

        await self._subscribe_all(freq_hz=self._rref_hz)
        self._rx_task = asyncio.create_task(self._receive_loop())
        self._resubscribe_task = asyncio.create_task(self._resubscribe_loop())

    async def stop(self) -> None:
        self._running = False
        with suppress(OSError):
            await self._subscribe_all(freq_hz=0)

        for task in (self._rx_task, self._resubscribe_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await task
        self._rx_task = None
        self._resubscribe_task = None

        if self._socket is not None:
            with suppress(OSError):
                self._socket.close()
        self._socket = None

    def drain(self) -> list[FlightState]:
        out = list(self._pending)
        self._pending.clear()
        return out

    async def _receive_loop(self) -> None:
        if self._socket is None:
            return
        loop = asyncio.get_running_loop()

        while self._running and self._socket is not None:
            payload, _addr = await loop.sock_recvfrom(self._socket, 4096)
            values_by_index = parse_rref_datagram(payload)
            if not values_by_index:
                continue
            for idx, value in values_by_index.items():
                key = KEY_BY_INDEX.get(idx)
                if key is not None:
                    self._values[key] = value

            try:
                state = flight_state_from_datarefs(self._values, time.time())
            except InvalidInput:
                self._rejected += 1
                continue
            self._pending.append(state)

    async def _resubscribe_loop(self) -> None:
        while self._running:
            await asyncio.sleep(5.0)
            await self._subscribe_all(freq_hz=self._rref_hz)

    async def _subscribe_all(self, *, freq_hz: int) -> None:
        if self._socket is None:
            return
        loop = asyncio.get_running_loop()
        for key, dataref in DATAREF_BY_KEY.items():
            packet = build_rref_request_packet(freq_hz=freq_hz, index=INDEX_BY_KEY[key], dataref=dataref)
            await loop.sock_sendto(self._socket, packet, self._xplane_addr)
