import asyncio
import datetime
import functools
import logging
import re
import socket
import time
import weakref
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from onvif import ONVIFCamera
from onvif.exceptions import ONVIFError
from zeep import Transport
from zeep.exceptions import Fault, TransportError

from param import (
    BLOCKING_WORKERS,
    CONNECT_TIMEOUT_SECONDS,
    ENCODING_PRIORITY,
    RPC_TIMEOUT_SECONDS,
)


STATUS_RE = re.compile(r"(?:HTTP\s*)?(?P<code>[1-5]\d{2})")
REDIRECT_RE = re.compile(r"location[:=]\s*(?P<url>\S+)", re.IGNORECASE)
CREDENTIALS_RE = re.compile(r"//[^@/]*@")
UNAUTHORIZED_KEYWORDS = (
    "notauthorized",
    "unauthorized",
    "failedauthentication",
    "could not be authenticated",
)
NOT_SUPPORTED_KEYWORDS = (
    "novalidoperation",
    "actionnotsupported",
    "notsupported",
    "invalidstreamsetup",
    "streamconflict",
    "multicast not supported",
)


class DeviceConnectionError(Exception):
    """The ONVIF session with a device could not be established."""


def mask_credentials(url):
    return CREDENTIALS_RE.sub("//<hidden>@", url or "")


def _extract_status_code(exc: Any) -> Optional[int]:
    if isinstance(exc, int):
        return exc
    status = getattr(exc, "status_code", None)
    if status:
        try:
            return int(status)
        except (TypeError, ValueError):
            pass
    message = str(exc) if exc is not None else ""
    match = STATUS_RE.search(message)
    if match:
        return int(match.group("code"))
    return None


def _extract_redirect(exc: Any) -> Optional[str]:
    message = str(exc) if exc is not None else ""
    match = REDIRECT_RE.search(message)
    if match:
        return match.group("url").strip("'\"")
    content = getattr(exc, "content", None)
    if isinstance(content, (bytes, bytearray)):
        content = content.decode("utf-8", errors="ignore")
    if isinstance(content, str):
        match = REDIRECT_RE.search(content)
        if match:
            return match.group("url").strip("'\"")
    return None


def parse_datetime(dt_info):
    """Build a datetime from a GetSystemDateAndTime reply.

    UTC fields are preferred; devices that only fill in local time get that.
    """
    for field in ("UTCDateTime", "LocalDateTime"):
        value = getattr(dt_info, field, None)
        if value is None:
            continue
        try:
            return datetime.datetime(
                year=value.Date.Year,
                month=value.Date.Month,
                day=value.Date.Day,
                hour=value.Time.Hour,
                minute=value.Time.Minute,
                second=value.Time.Second,
            )
        except (AttributeError, TypeError, ValueError):
            continue
    return None


def _classify_category(status: Optional[int], message: str, *, exc: Any = None) -> str:
    text = (message or "").lower()
    fault_code = str(getattr(exc, "code", "") or "").lower()
    if exc is not None and isinstance(exc, (socket.timeout, TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if "timed out" in text or "timeout" in text:
        return "timeout"
    if status in (401, 403) or any(k in text or k in fault_code for k in UNAUTHORIZED_KEYWORDS):
        return "unauthorized"
    if status in (400, 404) or any(k in text or k in fault_code for k in NOT_SUPPORTED_KEYWORDS):
        return "not_supported"
    if status is not None and 300 <= status < 400:
        return "redirect"
    return "error"


def _build_error_result(
    exc: Any,
    *,
    redirect: Optional[str] = None,
    latency_ms: Optional[float] = None,
) -> Dict[str, Any]:
    message = str(exc) if exc is not None else ""
    code = _extract_status_code(exc)
    result: Dict[str, Any] = {
        "success": False,
        "status": code,
        "category": _classify_category(code, message, exc=exc),
        "error": message or type(exc).__name__,
        "result": None,
        "latency_ms": latency_ms,
        "exception": type(exc).__name__ if exc else None,
    }
    if redirect:
        result["redirect"] = redirect
    if isinstance(exc, Fault):
        result["fault_code"] = getattr(exc, "code", None)
    return result


def _update_service_address(service: Any, new_address: str) -> bool:
    try:
        binding = getattr(service.ws_client, "_binding", None)
        binding_name = getattr(binding, "name", None)
        if binding_name is None:
            return False
        service.ws_client = service.zeep_client.create_service(binding_name, new_address)
        service.xaddr = new_address
        return True
    except Exception:
        logging.debug("Failed to update service address to %s", new_address, exc_info=True)
        return False


def summarize_call(result: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Strip the raw SOAP payload so a call result can be serialised."""
    if not result:
        return None
    return {
        key: result.get(key)
        for key in ("success", "status", "category", "error", "latency_ms", "exception")
    }


def safe_call(
    service: Any,
    method_name: str,
    params: Any = None,
    *,
    allow_redirect: bool = True,
) -> Dict[str, Any]:
    """Invoke one ONVIF operation and report the outcome instead of raising."""
    start = time.perf_counter()
    try:
        method = getattr(service, method_name)
        response = method() if params is None else method(params)
        return {
            "success": True,
            "status": 200,
            "result": response,
            "category": None,
            "error": None,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }
    except TransportError as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, redirect=_extract_redirect(err), latency_ms=latency)
    except (Fault, ONVIFError) as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, latency_ms=latency)
    except Exception as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, latency_ms=latency)

    redirect_url = result.get("redirect")
    if (
        allow_redirect
        and redirect_url
        and result.get("category") == "redirect"
        and _update_service_address(service, redirect_url)
    ):
        logging.debug("Following redirect for %s: %s", method_name, redirect_url)
        return safe_call(service, method_name, params=params, allow_redirect=False)
    return result


# Shared by every event loop; slots are per loop
_EXECUTOR = ThreadPoolExecutor(max_workers=BLOCKING_WORKERS, thread_name_prefix="onvif")
_SLOTS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = (
    weakref.WeakKeyDictionary()
)


def _slots(loop) -> asyncio.Semaphore:
    slots = _SLOTS.get(loop)
    if slots is None:
        slots = _SLOTS[loop] = asyncio.Semaphore(BLOCKING_WORKERS)
    return slots


async def _submit(func, *args, **kwargs) -> asyncio.Future:
    """Start ``func`` on a worker thread as soon as one is free.

    The returned future is already running, so a timeout applied to it only
    counts time spent in the call itself.  The slot is held until the thread
    returns, even when the caller stops waiting, so the number of submitted
    calls never exceeds the number of workers.
    """
    loop = asyncio.get_running_loop()
    slots = _slots(loop)
    await slots.acquire()
    try:
        future = loop.run_in_executor(_EXECUTOR, functools.partial(func, *args, **kwargs))
    except BaseException:
        slots.release()
        raise
    future.add_done_callback(lambda _future: slots.release())
    return future


async def run_blocking(func, *args, **kwargs):
    return await asyncio.shield(await _submit(func, *args, **kwargs))


async def call_async(
    service: Any,
    method_name: str,
    params: Any = None,
    *,
    timeout: float = RPC_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    """Run :func:`safe_call` off the event loop, bounded by ``timeout``."""
    future = await _submit(safe_call, service, method_name, params)
    start = time.perf_counter()
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout)
    except asyncio.TimeoutError as err:
        latency = round((time.perf_counter() - start) * 1000, 2)
        result = _build_error_result(err, latency_ms=latency)
        result["error"] = f"{method_name} timed out after {timeout}s"
        return result


def _open_camera(address, port, username, password, timeout):
    transport = Transport(timeout=timeout, operation_timeout=timeout)
    return ONVIFCamera(address, port, username, password, transport=transport)


async def connect_camera(
    address: str,
    port: int,
    username: str,
    password: str,
    timeout: float = CONNECT_TIMEOUT_SECONDS,
):
    """Open an ONVIF session; raise :class:`DeviceConnectionError` on failure."""
    future = await _submit(_open_camera, address, port, username, password, timeout)
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout + 1)
    except asyncio.TimeoutError as err:
        raise DeviceConnectionError(f"Connection timed out after {timeout}s") from err
    except Exception as err:
        raise DeviceConnectionError(str(err) or type(err).__name__) from err


async def create_service(camera: Any, service_name: str):
    creator = getattr(camera, f"create_{service_name}_service", None)
    if not callable(creator):
        raise ONVIFError(f"Service {service_name} unavailable")
    return await run_blocking(creator)


@dataclass(frozen=True)
class MediaProfile:
    token: str
    source_token: str
    encoding: str
    width: Optional[int] = None
    height: Optional[int] = None
    name: Optional[str] = None

    @property
    def resolution(self) -> str:
        if self.width is None or self.height is None:
            return "unknown"
        return f"{self.width}x{self.height}"


def profile_from_onvif(profile: Any) -> Optional[MediaProfile]:
    """Convert a zeep Profile; profiles lacking source or encoder config are skipped."""
    source_config = getattr(profile, "VideoSourceConfiguration", None)
    encoder_config = getattr(profile, "VideoEncoderConfiguration", None)
    token = getattr(profile, "token", None)
    if source_config is None or encoder_config is None or token is None:
        return None
    resolution = getattr(encoder_config, "Resolution", None)
    return MediaProfile(
        token=token,
        source_token=getattr(source_config, "SourceToken", None),
        encoding=str(getattr(encoder_config, "Encoding", "") or ""),
        width=getattr(resolution, "Width", None) if resolution is not None else None,
        height=getattr(resolution, "Height", None) if resolution is not None else None,
        name=getattr(profile, "Name", None),
    )


def profiles_from_onvif(profiles: Optional[Iterable[Any]]) -> List[MediaProfile]:
    converted = []
    for profile in profiles or []:
        item = profile_from_onvif(profile)
        if item is not None:
            converted.append(item)
    return converted


def select_best_profile(source_token: str, profiles: Iterable[MediaProfile]) -> Optional[MediaProfile]:
    """Pick the preferred profile for one video source.

    The first H265 profile wins, else the first H264, MPEG4, JPEG and finally
    the first profile of any other encoding.  Returns ``None`` when no
    profile references ``source_token``.
    """
    matching = [p for p in profiles if p.source_token == source_token]
    for encoding in ENCODING_PRIORITY:
        for profile in matching:
            if profile.encoding == encoding:
                return profile
    return matching[0] if matching else None


@dataclass
class StreamOutcome:
    status: str
    uri: Optional[str] = None
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status == "ok" and bool(self.uri)


def stream_request(profile_token: str, variant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "StreamSetup": {
            "Stream": variant["stream"],
            "Transport": {"Protocol": variant["protocol"]},
        },
        "ProfileToken": profile_token,
    }


async def get_stream_uri(
    media_service: Any,
    profile_token: str,
    variant: Dict[str, Any],
    *,
    timeout: float = RPC_TIMEOUT_SECONDS,
) -> StreamOutcome:
    call = await call_async(
        media_service, "GetStreamUri", stream_request(profile_token, variant), timeout=timeout
    )
    if call.get("success"):
        uri = getattr(call.get("result"), "Uri", None)
        if uri:
            return StreamOutcome("ok", uri=uri)
        return StreamOutcome("error", error="Empty stream URI")
    category = call.get("category")
    if category == "not_supported" or (
        variant.get("optional") and category not in ("timeout", "unauthorized")
    ):
        return StreamOutcome("not_supported", error=call.get("error"))
    return StreamOutcome("error", error=call.get("error"))


async def get_snapshot_uri(
    media_service: Any,
    profile_token: str,
    *,
    timeout: float = RPC_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    call = await call_async(
        media_service, "GetSnapshotUri", {"ProfileToken": profile_token}, timeout=timeout
    )
    if call.get("success") and not getattr(call.get("result"), "Uri", None):
        call = dict(call, success=False, category="error", error="Empty snapshot URI")
    return call
