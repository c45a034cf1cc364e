# Central configuration for onvif_audit parameters

# Default ONVIF port used when neither the CLI nor a device list gives one
DEFAULT_PORT = 80

# Default credentials used when none are supplied
DEFAULT_USERNAME = "onvifusername"
DEFAULT_PASSWORD = "onvifpassword"

# Seconds allowed for establishing the ONVIF session with a device
CONNECT_TIMEOUT_SECONDS = 5

# Upper bound for a single ONVIF RPC once the session is up.  A hung call
# only stalls its own device, but the audit still has to finish.
RPC_TIMEOUT_SECONDS = 15

# Upper bound for one snapshot download
SNAPSHOT_TIMEOUT_SECONDS = 10

# Worker threads for blocking ONVIF calls.  A call only starts its timeout
# once it holds one of these, so queued calls are never timed out unrun.
BLOCKING_WORKERS = 64

# Length of the WS-Discovery listening window in seconds
PROBE_WINDOW_SECONDS = 5

# WS-Discovery multicast endpoints
WS_DISCOVERY_PORT = 3702
WS_DISCOVERY_IPV4_GROUP = "239.255.255.250"
WS_DISCOVERY_IPV6_GROUP = "ff02::c"

# Scope prefixes carrying the human readable device name and hardware.  The
# value that follows the prefix is percent-encoded.
SCOPE_NAME_PREFIX = "onvif://www.onvif.org/name/"
SCOPE_HARDWARE_PREFIX = "onvif://www.onvif.org/hardware/"

# Largest number of addresses a single dash range may expand to
MAX_RANGE_SIZE = 2 ** 20

# Prefix of the timestamped folder holding snapshots and reports
REPORT_FOLDER_PREFIX = "onvif_audit_report_"

# Encodings in order of preference when choosing a profile for a video
# source.  Matching is exact and case-sensitive; anything else ranks last.
ENCODING_PRIORITY = ("H265", "H264", "MPEG4", "JPEG")

# The stream URI variants queried for every mapped video source.  "optional"
# marks variants a device may legitimately not offer (multicast is optional
# in Profile S and may be disabled on Profile T devices).
STREAM_VARIANTS = [
    {
        "name": "tcp",
        "label": "Live TCP Stream",
        "stream": "RTP-Unicast",
        "protocol": "RTSP",
        "optional": False,
    },
    {
        "name": "udp",
        "label": "Live UDP Stream",
        "stream": "RTP-Unicast",
        "protocol": "UDP",
        "optional": False,
    },
    {
        "name": "http",
        "label": "Live HTTP Stream",
        "stream": "RTP-Unicast",
        "protocol": "HTTP",
        "optional": False,
    },
    {
        "name": "multicast",
        "label": "Live Multicast Stream",
        "stream": "RTP-Multicast",
        "protocol": "UDP",
        "optional": True,
    },
]

# Process exit codes
EXIT_OK = 0
EXIT_INVALID_INPUT = 1
EXIT_OUTPUT_FOLDER = 3
EXIT_DEVICE_FAILURES = 4
