import argparse

from param import CONNECT_TIMEOUT_SECONDS, DEFAULT_PORT, PROBE_WINDOW_SECONDS

__version__ = "1.0.0"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="ONVIF Camera Audit")
    parser.add_argument("--version", action="version", version=__version__)
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("-f", "--filename", help="JSON file with a 'cameralist' of devices")
    mode.add_argument(
        "-i",
        "--ipaddress",
        help="IP address (x.x.x.x), range (x.x.x.x-y.y.y.y), comma list, or a mixture",
    )
    mode.add_argument(
        "-s", "--scan", action="store_true", help="Discover ONVIF devices on the local subnet"
    )
    parser.add_argument("-P", "--port", type=int, help=f"ONVIF port. Default {DEFAULT_PORT}")
    parser.add_argument("-u", "--username", help="ONVIF username")
    parser.add_argument("-p", "--password", help="ONVIF password")
    parser.add_argument(
        "--timeout",
        type=float,
        default=CONNECT_TIMEOUT_SECONDS,
        help="Seconds allowed for connecting to each device",
    )
    parser.add_argument(
        "--scan-duration",
        type=float,
        default=PROBE_WINDOW_SECONDS,
        help="Seconds to listen for discovery responses",
    )
    parser.add_argument(
        "--output-dir",
        default=".",
        help="Directory in which the timestamped report folder is created",
    )
    parser.add_argument(
        "--strict-list",
        action="store_true",
        help="Do not let device list entries inherit values from previous entries",
    )
    parser.add_argument("--logfile", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)
