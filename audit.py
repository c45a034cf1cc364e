"""Per-device ONVIF interrogation and the driver that runs all devices at once.

Each :class:`DevicePipeline` walks one device through a fixed sequence of
stages.  A stage starts only after the previous one, including any fan-out
of concurrent calls, has fully settled.  Pipelines never share mutable
state, so one device failing or hanging does not affect the others.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from fanout import settle_all
from ip_utils import expand_address_spec
from onvif_utils import (
    DeviceConnectionError,
    MediaProfile,
    StreamOutcome,
    call_async,
    connect_camera,
    create_service,
    get_snapshot_uri,
    get_stream_uri,
    mask_credentials,
    parse_datetime,
    profiles_from_onvif,
    run_blocking,
    select_best_profile,
    summarize_call,
)
from param import (
    CONNECT_TIMEOUT_SECONDS,
    DEFAULT_PASSWORD,
    DEFAULT_PORT,
    DEFAULT_USERNAME,
    MAX_RANGE_SIZE,
    RPC_TIMEOUT_SECONDS,
    SNAPSHOT_TIMEOUT_SECONDS,
    STREAM_VARIANTS,
)
from report_store import (
    report_path,
    save_json_report,
    save_snapshot,
    save_text_report,
    snapshot_path,
)

DEVICE_FIELDS = ("ipaddress", "port", "username", "password")
SEPARATOR = "------------------------------"
INFO_FIELDS = (
    ("Manufacturer", "manufacturer"),
    ("Model", "model"),
    ("Firmware Version", "firmware"),
    ("Serial Number", "serial"),
    ("Hardware ID", "hardware_id"),
)


class DeviceListError(ValueError):
    """The JSON device list is unreadable or malformed."""


@dataclass(frozen=True)
class DeviceTarget:
    address: str
    port: int
    username: str
    password: str


@dataclass
class SourceAudit:
    index: int
    token: str
    profile: Optional[MediaProfile] = None
    snapshot_uri: Optional[str] = None
    snapshot_file: Optional[str] = None
    snapshot_error: Optional[str] = None
    streams: Dict[str, StreamOutcome] = field(default_factory=dict)

    @property
    def mapped(self) -> bool:
        return self.profile is not None


@dataclass
class AuditReport:
    target: DeviceTarget
    date: Optional[str] = None
    device: Optional[Dict[str, Any]] = None
    # Keyed by video source token, in the order the device listed them
    sources: Dict[str, SourceAudit] = field(default_factory=dict)
    calls: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def unmapped_sources(self) -> List[str]:
        return [token for token, source in self.sources.items() if not source.mapped]


@dataclass
class DeviceResult:
    target: DeviceTarget
    status: str
    report: Optional[AuditReport] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def build_targets(spec, port, username, password, max_size=MAX_RANGE_SIZE):
    """Expand an address spec into one target per address."""
    try:
        port = int(port)
    except (TypeError, ValueError) as err:
        raise DeviceListError(f"Invalid port: {port!r}") from err
    return [
        DeviceTarget(address, port, username, password)
        for address in expand_address_spec(spec, max_size)
    ]


def merge_device_entries(entries, defaults, carry_over=True):
    """Resolve every device-list entry into a complete set of fields.

    Missing fields come from the previous resolved entry when ``carry_over``
    is set (the historical behaviour of device-list files), otherwise from
    ``defaults`` only.
    """
    previous = dict(defaults)
    resolved_entries = []
    for position, entry in enumerate(entries, 1):
        if not isinstance(entry, dict):
            raise DeviceListError(f"Device list entry {position} is not an object")
        resolved = {}
        for name in DEVICE_FIELDS:
            value = entry.get(name)
            if value in (None, ""):
                value = previous.get(name)
                if carry_over and value != defaults.get(name):
                    logging.warning(
                        "Device list entry %d inherits %s from a previous entry", position, name
                    )
            resolved[name] = value
        if not resolved["ipaddress"]:
            raise DeviceListError(f"Device list entry {position} has no ipaddress")
        if carry_over:
            previous = resolved
        resolved_entries.append(resolved)
    return resolved_entries


def load_device_list(path, defaults, carry_over=True, max_size=MAX_RANGE_SIZE):
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as err:
        raise DeviceListError(f"Cannot read device list {path}: {err}") from err
    entries = data.get("cameralist") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise DeviceListError(f"Device list {path} has no 'cameralist' array")

    targets: List[DeviceTarget] = []
    for entry in merge_device_entries(entries, defaults, carry_over):
        targets.extend(
            build_targets(
                entry["ipaddress"], entry["port"], entry["username"], entry["password"], max_size
            )
        )
    return targets


def default_fields(port=None, username=None, password=None):
    return {
        "ipaddress": None,
        "port": port or DEFAULT_PORT,
        "username": username or DEFAULT_USERNAME,
        "password": password or DEFAULT_PASSWORD,
    }


def rewrite_snapshot_url(uri, address):
    """Point a snapshot URI at the audited address.

    Devices behind NAT often report their private address in the URI, so
    only its path, query and port are kept.
    """
    parts = urlsplit(uri)
    try:
        port = parts.port or 80
    except ValueError:
        port = 80
    host = f"[{address}]" if ":" in address else address
    return urlunsplit(("http", f"{host}:{port}", parts.path or "/", parts.query, ""))


async def download_snapshot(client, url):
    response = await client.get(url)
    response.raise_for_status()
    return response.content


def _call_result(entry):
    if entry.ok:
        return entry.value
    return {"success": False, "category": "error", "error": str(entry.error)}


def _source_header(source: SourceAudit) -> str:
    label = f"Video Source {source.index + 1} [{source.token}]"
    if not source.mapped:
        return f"{label} [no profile]"
    return f"{label} [{source.profile.encoding} {source.profile.resolution}]"


def _source_lines(source: SourceAudit, snapshot_label: str) -> List[str]:
    lines = [_source_header(source)]
    if source.snapshot_uri:
        lines.append(f"{snapshot_label}: = ".ljust(25) + source.snapshot_uri)
    for variant in STREAM_VARIANTS:
        outcome = source.streams.get(variant["name"])
        if outcome is not None and outcome.available:
            lines.append(f"{variant['label']}: = ".ljust(25) + outcome.uri)
    return lines


def render_report(report: AuditReport) -> str:
    """Plain-text report file body, CRLF terminated."""
    target = report.target
    lines = [
        f"Host:= {target.address} Port:= {target.port}",
        f"Date:= {report.date or 'unknown'}",
    ]
    device = report.device or {}
    for label, key in INFO_FIELDS:
        value = device.get(key)
        lines.append(f"{label}:= {value if value is not None else 'unknown'}")
    for source in report.sources.values():
        lines.extend(_source_lines(source, "Snapshot URL"))
    return "\r\n".join(lines) + "\r\n"


def render_console(report: AuditReport) -> str:
    target = report.target
    lines = [
        SEPARATOR,
        f"Host: {target.address} Port: {target.port}",
        f"Date: = {report.date or 'unknown'}",
        f"Info: = {json.dumps(report.device) if report.device else 'unknown'}",
    ]
    for source in report.sources.values():
        lines.extend(_source_lines(source, "Snapshot URI"))
        lines.append(SEPARATOR)
    if not report.sources:
        lines.append(SEPARATOR)
    return "\n".join(lines)


def report_to_dict(report: AuditReport) -> Dict[str, Any]:
    target = report.target
    return {
        "host": target.address,
        "port": target.port,
        "date": report.date,
        "device": report.device,
        "video_sources": [
            {
                "index": source.index + 1,
                "token": source.token,
                "profile": asdict(source.profile) if source.profile else None,
                "snapshot_uri": source.snapshot_uri,
                "snapshot_file": source.snapshot_file,
                "snapshot_error": source.snapshot_error,
                "streams": {name: asdict(outcome) for name, outcome in source.streams.items()},
            }
            for source in report.sources.values()
        ],
        "unmapped_sources": report.unmapped_sources,
        "calls": report.calls,
    }


class DevicePipeline:
    def __init__(
        self,
        target: DeviceTarget,
        folder: str,
        *,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        rpc_timeout: float = RPC_TIMEOUT_SECONDS,
        snapshot_timeout: float = SNAPSHOT_TIMEOUT_SECONDS,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        out=print,
    ):
        self.target = target
        self.folder = folder
        self.connect_timeout = connect_timeout
        self.rpc_timeout = rpc_timeout
        self.snapshot_timeout = snapshot_timeout
        self.http_transport = http_transport
        self.out = out
        self.report = AuditReport(target)
        self.profiles: List[MediaProfile] = []

    async def run(self) -> DeviceResult:
        target = self.target
        self.out(f"Connecting to {target.address}:{target.port}")
        try:
            camera = await connect_camera(
                target.address,
                target.port,
                target.username,
                target.password,
                timeout=self.connect_timeout,
            )
        except DeviceConnectionError as err:
            logging.info("Cannot connect to %s:%s: %s", target.address, target.port, err)
            self.out(
                "\n".join(
                    [SEPARATOR, f"Cannot connect to {target.address}:{target.port}", str(err), SEPARATOR]
                )
            )
            return DeviceResult(target, "unreachable", error=str(err))

        await self._fetch_identity(camera)
        media = await self._service(camera, "media")
        if media is not None:
            await self._fetch_video_sources(media)
            await self._fetch_profiles(media)
            self._select_profiles()
            async with httpx.AsyncClient(
                auth=httpx.DigestAuth(target.username, target.password),
                timeout=self.snapshot_timeout,
                transport=self.http_transport,
            ) as client:
                await self._fetch_snapshots(media, client)
            await self._fetch_streams(media)

        self.out(render_console(self.report))
        return await self._write_report()

    def _record(self, name, call):
        self.report.calls[name] = summarize_call(call)
        if not call.get("success"):
            logging.debug(
                "%s on %s failed (%s): %s",
                name,
                self.target.address,
                call.get("category"),
                call.get("error"),
            )
        return call

    async def _service(self, camera, name):
        try:
            return await create_service(camera, name)
        except Exception as err:
            logging.warning("%s service unavailable on %s: %s", name, self.target.address, err)
            self.report.calls[f"create_{name}_service"] = {
                "success": False,
                "category": "not_supported",
                "error": str(err),
            }
            return None

    async def _fetch_identity(self, camera):
        devicemgmt = await self._service(camera, "devicemgmt")
        if devicemgmt is None:
            return
        settled = await settle_all(
            [
                ("GetSystemDateAndTime", call_async(devicemgmt, "GetSystemDateAndTime", timeout=self.rpc_timeout)),
                ("GetDeviceInformation", call_async(devicemgmt, "GetDeviceInformation", timeout=self.rpc_timeout)),
            ]
        )
        date_call = self._record("GetSystemDateAndTime", _call_result(settled["GetSystemDateAndTime"]))
        if date_call.get("success"):
            camera_dt = parse_datetime(date_call.get("result"))
            self.report.date = camera_dt.isoformat(sep=" ") if camera_dt else None

        info_call = self._record("GetDeviceInformation", _call_result(settled["GetDeviceInformation"]))
        if info_call.get("success"):
            info = info_call.get("result")
            self.report.device = {
                "manufacturer": getattr(info, "Manufacturer", None),
                "model": getattr(info, "Model", None),
                "firmware": getattr(info, "FirmwareVersion", None),
                "serial": getattr(info, "SerialNumber", None),
                "hardware_id": getattr(info, "HardwareId", None),
            }

    async def _fetch_video_sources(self, media):
        call = self._record(
            "GetVideoSources", await call_async(media, "GetVideoSources", timeout=self.rpc_timeout)
        )
        if not call.get("success"):
            return
        tokens = [getattr(source, "token", None) for source in call.get("result") or []]
        for token in tokens:
            if not token:
                continue
            if token in self.report.sources:
                logging.warning("Duplicate video source token %s on %s", token, self.target.address)
                continue
            self.report.sources[token] = SourceAudit(index=len(self.report.sources), token=token)

    async def _fetch_profiles(self, media):
        call = self._record(
            "GetProfiles", await call_async(media, "GetProfiles", timeout=self.rpc_timeout)
        )
        self.profiles = profiles_from_onvif(call.get("result")) if call.get("success") else []

    def _select_profiles(self):
        for source in self.report.sources.values():
            source.profile = select_best_profile(source.token, self.profiles)
            if source.profile is None:
                logging.warning(
                    "No media profile references video source %s on %s",
                    source.token,
                    self.target.address,
                )

    def _mapped_sources(self) -> List[SourceAudit]:
        return [source for source in self.report.sources.values() if source.mapped]

    async def _fetch_snapshots(self, media, client):
        settled = await settle_all(
            (source.token, self._snapshot(media, client, source))
            for source in self._mapped_sources()
        )
        for token, entry in settled.items():
            if not entry.ok:
                logging.error("Snapshot of source %s on %s raised", token, self.target.address, exc_info=entry.error)
                self.report.sources[token].snapshot_error = str(entry.error)

    async def _snapshot(self, media, client, source: SourceAudit):
        call = self._record(
            f"GetSnapshotUri[{source.token}]",
            await get_snapshot_uri(media, source.profile.token, timeout=self.rpc_timeout),
        )
        if not call.get("success"):
            source.snapshot_error = call.get("error")
            return
        source.snapshot_uri = call["result"].Uri

        url = rewrite_snapshot_url(source.snapshot_uri, self.target.address)
        path = snapshot_path(self.folder, self.target.address, source.index, len(self.report.sources))
        try:
            content = await download_snapshot(client, url)
            await run_blocking(save_snapshot, path, content)
        except (httpx.HTTPError, OSError) as err:
            logging.info("Snapshot download from %s failed: %s", mask_credentials(url), err)
            source.snapshot_error = str(err) or type(err).__name__
            return
        source.snapshot_file = path

    async def _fetch_streams(self, media):
        settled = await settle_all(
            (
                (source.token, variant["name"]),
                get_stream_uri(media, source.profile.token, variant, timeout=self.rpc_timeout),
            )
            for source in self._mapped_sources()
            for variant in STREAM_VARIANTS
        )
        for (token, name), entry in settled.items():
            outcome = entry.value if entry.ok else StreamOutcome("error", error=str(entry.error))
            self.report.sources[token].streams[name] = outcome

    async def _write_report(self) -> DeviceResult:
        address = self.target.address
        text_path = report_path(self.folder, address)
        try:
            await run_blocking(save_text_report, text_path, render_report(self.report))
            await run_blocking(
                save_json_report, report_path(self.folder, address, "json"), report_to_dict(self.report)
            )
        except OSError as err:
            logging.error("Cannot create output file %s: %s", text_path, err)
            self.out(f"ERROR - cannot create output file {text_path}")
            return DeviceResult(self.target, "report_failed", self.report, str(err))
        return DeviceResult(self.target, "ok", self.report)


async def run_audit(targets, folder, **options) -> List[DeviceResult]:
    """Audit every target concurrently and return one result per target."""
    targets = list(targets)
    settled = await settle_all(
        (index, DevicePipeline(target, folder, **options).run())
        for index, target in enumerate(targets)
    )
    results = []
    for index, target in enumerate(targets):
        entry = settled[index]
        if entry.ok:
            results.append(entry.value)
            continue
        logging.error("Audit of %s aborted", target.address, exc_info=entry.error)
        results.append(DeviceResult(target, "error", error=str(entry.error)))
    return results
