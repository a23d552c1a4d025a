"""Module defining various global constants."""

# outpost version
VERSION = "1.0.0"

# outpost protocol
# The major version must be identical on the client and the relay. A relay with a
# different major version is treated as stale and gets redeployed.
PROTOCOL_VERSION = "1.0.0"

# Version tag carried by every message on the wire.
JSONRPC_VERSION = "2.0"

# Special exit code for when outpost itself fails.
OUTPOST_ERROR_CODE = 254

# Correlation id of the greeting the relay sends once on every new connection.
GREETING_ID = "welcome"

# Default TCP port of the relay.
DEFAULT_PORT = 8080

# Default terminal type advertised to shells running in a pseudo-terminal.
DEFAULT_TERM = "xterm-256color"

# Bootstrap timing (seconds).
PROBE_TIMEOUT = 5.0
DIRECT_TIMEOUT = 5.0
POLL_ATTEMPTS = 15
POLL_DELAY = 2.0
COMMAND_TIMEOUT = 30.0
INSTALL_TIMEOUT = 120.0

# Timeout for single-shot requests (seconds).
REQUEST_TIMEOUT = 30.0

# Files in the remote working directory.
REMOTE_DIR = "~/.outpost"
ARTIFACT_NAME = "outpost-relay.tar.gz"
MANIFEST_NAME = "requirements.txt"
LOG_NAME = "relay.log"

# Third-party requirements of outpost. The whole package is deployed, so these are
# also installed into the environment of the relay on the remote host.
RELAY_REQUIREMENTS = [
    "pyzmq>=19.0.0",
    "fasteners>=0.15",
    "semver>=2.9.1",
]
