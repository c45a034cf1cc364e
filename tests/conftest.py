import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from zeep.exceptions import Fault


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def make_profile(token, source_token, encoding, width=1920, height=1080):
    return SimpleNamespace(
        token=token,
        Name=f"{encoding} {token}",
        VideoSourceConfiguration=SimpleNamespace(SourceToken=source_token),
        VideoEncoderConfiguration=SimpleNamespace(
            Encoding=encoding,
            Resolution=SimpleNamespace(Width=width, Height=height),
        ),
    )


class FakeDeviceMgmt:
    def __init__(self, fail=()):
        self.fail = set(fail)

    def GetSystemDateAndTime(self):
        if "GetSystemDateAndTime" in self.fail:
            raise Fault("Action failed")
        return SimpleNamespace(
            UTCDateTime=SimpleNamespace(
                Date=SimpleNamespace(Year=2024, Month=5, Day=17),
                Time=SimpleNamespace(Hour=9, Minute=30, Second=5),
            )
        )

    def GetDeviceInformation(self):
        if "GetDeviceInformation" in self.fail:
            raise Fault("Sender not authorized", code="ter:NotAuthorized")
        return SimpleNamespace(
            Manufacturer="ACME",
            Model="Cam-2X",
            FirmwareVersion="1.0.4",
            SerialNumber="SN123",
            HardwareId="HW9",
        )


class FakeMedia:
    def __init__(self, sources, profiles, snapshot_host="10.99.0.1:8080", multicast=False):
        self.sources = sources
        self.profiles = profiles
        self.snapshot_host = snapshot_host
        self.multicast = multicast
        self.stream_requests = []

    def GetVideoSources(self):
        return [SimpleNamespace(token=token) for token in self.sources]

    def GetProfiles(self):
        return self.profiles

    def GetSnapshotUri(self, params):
        token = params["ProfileToken"]
        return SimpleNamespace(Uri=f"http://{self.snapshot_host}/snapshot?profile={token}")

    def GetStreamUri(self, params):
        setup = params["StreamSetup"]
        token = params["ProfileToken"]
        self.stream_requests.append((token, setup["Stream"], setup["Transport"]["Protocol"]))
        if setup["Stream"] == "RTP-Multicast" and not self.multicast:
            raise Fault("Multicast is disabled", code="ter:InvalidStreamSetup")
        protocol = setup["Transport"]["Protocol"].lower()
        return SimpleNamespace(Uri=f"rtsp://10.99.0.1/{token}/{protocol}")


class FakeCamera:
    def __init__(self, devicemgmt=None, media=None):
        self.devicemgmt = devicemgmt or FakeDeviceMgmt()
        self.media = media

    def create_devicemgmt_service(self):
        return self.devicemgmt

    def create_media_service(self):
        if self.media is None:
            raise RuntimeError("No media service")
        return self.media


@pytest.fixture
def two_source_camera():
    profiles = [
        make_profile("jpeg_2", "VS2", "JPEG", 640, 480),
        make_profile("h264_1", "VS1", "H264", 1920, 1080),
    ]
    return FakeCamera(media=FakeMedia(["VS1", "VS2"], profiles))
