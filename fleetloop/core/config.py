"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    FLEET_INVENTORY        — YAML node inventory (default: fleet.yaml)
    STATE_DIR              — where LoopState JSON files live (default: state)
    PROOF_DIR              — where proof bundles are written (default: proofs)
    SSH_USER / SSH_KEY     — credentials for the remote shell channel
    SSH_CONNECT_TIMEOUT    — seconds per connection attempt (default: 10)
    LOOP_QUORUM            — minimum healthy fraction of the fleet (default: 0.5)
    WAIT_SHORT_SECONDS     — first soak window (default: 1 hour)
    WAIT_LONG_SECONDS      — second soak window (default: 6 hours)
    BUILD_MODE             — "host" or "docker" (default: host)
    FIX_COMMAND            — external fix provider command (no default)
    FIX_ATTEMPT_CAP        — max fix proposals per FIX phase, 0 = unbounded
    NOTIFY_WEBHOOK_URL     — optional HTTP sink for notification events

Timeout Philosophy:
    Every remote operation carries an explicit timeout. Timeouts are
    per node: a node that times out is marked unreachable or failed for
    that operation and the fleet operation carries on without it.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Inventory / persistence
FLEET_INVENTORY = os.getenv("FLEET_INVENTORY", "fleet.yaml")
STATE_DIR = os.getenv("STATE_DIR", "state")
PROOF_DIR = os.getenv("PROOF_DIR", "proofs")

# Remote shell channel
SSH_USER = os.getenv("SSH_USER", "root")
SSH_KEY = os.getenv("SSH_KEY", "")
SSH_CONNECT_TIMEOUT = int(os.getenv("SSH_CONNECT_TIMEOUT", 10))

# Command timeouts per operation type (seconds)
PROBE_TIMEOUT = int(os.getenv("PROBE_TIMEOUT", 20))
SERVICE_TIMEOUT = int(os.getenv("SERVICE_TIMEOUT", 60))
TRANSFER_TIMEOUT = int(os.getenv("TRANSFER_TIMEOUT", 300))
TEST_TIMEOUT = int(os.getenv("TEST_TIMEOUT", 900))
LOG_FETCH_TIMEOUT = int(os.getenv("LOG_FETCH_TIMEOUT", 60))
NAT_CONFIG_TIMEOUT = int(os.getenv("NAT_CONFIG_TIMEOUT", 180))

# Fleet policy
LOOP_QUORUM = float(os.getenv("LOOP_QUORUM", 0.5))
HEALTH_WINDOW_SECONDS = int(os.getenv("HEALTH_WINDOW_SECONDS", 30))
HEALTH_POLL_INTERVAL = float(os.getenv("HEALTH_POLL_INTERVAL", 2.0))

# Soak windows and their poll intervals
WAIT_SHORT_SECONDS = int(os.getenv("WAIT_SHORT_SECONDS", 3600))
WAIT_LONG_SECONDS = int(os.getenv("WAIT_LONG_SECONDS", 6 * 3600))
WAIT_SHORT_POLL_SECONDS = int(os.getenv("WAIT_SHORT_POLL_SECONDS", 300))
WAIT_LONG_POLL_SECONDS = int(os.getenv("WAIT_LONG_POLL_SECONDS", 900))

# Percentage points a metric may drop during soak before it counts as a regression
REGRESSION_TOLERANCE = float(os.getenv("REGRESSION_TOLERANCE", 0.0))

# Managed service on each node
SERVICE_NAME = os.getenv("SERVICE_NAME", "saorsa-quic-test")
PROCESS_NAME = os.getenv("PROCESS_NAME", "quic-test")
REMOTE_BINARY_PATH = os.getenv("REMOTE_BINARY_PATH", "/opt/saorsa/quic-test")

# Remote commands ({suite}, {binary}, {lines}, {service} are filled in)
TEST_COMMAND = os.getenv(
    "TEST_COMMAND", "{binary} verify --suite {suite} --json"
)
CONNECTION_REPORT_COMMAND = os.getenv(
    "CONNECTION_REPORT_COMMAND", "{binary} report --connections --json"
)
LOG_TAIL_LINES = int(os.getenv("LOG_TAIL_LINES", 500))
NAT_SCRIPT_DIR = os.getenv("NAT_SCRIPT_DIR", "/root/nat-simulation")
# deploy-nat-type.sh has no cgnat case; this script (in NAT_SCRIPT_DIR) applies it
NAT_CGNAT_SCRIPT = os.getenv("NAT_CGNAT_SCRIPT", "nat-type-cgnat.sh")

# Local build
BUILD_MODE = os.getenv("BUILD_MODE", "host")
BUILD_WORKSPACE = os.getenv("BUILD_WORKSPACE", ".")
BUILD_TARGET = os.getenv("BUILD_TARGET", "x86_64-unknown-linux-musl")
BUILD_MODULE = os.getenv("BUILD_MODULE", "quic-test")
BUILD_COMMAND = os.getenv(
    "BUILD_COMMAND", "cargo zigbuild --release -p {module} --target {target}"
)
BUILD_DOCKER_IMAGE = os.getenv("BUILD_DOCKER_IMAGE", "rust:1.77-slim")
FAST_TEST_COMMAND = os.getenv("FAST_TEST_COMMAND", "cargo test --lib -p {module}")

# Build execution timeout in seconds
DEFAULT_BUILD_TIMEOUT = int(os.getenv("DEFAULT_BUILD_TIMEOUT", 1800))

# Fix cycle
FIX_COMMAND = os.getenv("FIX_COMMAND", "")
FIX_TIMEOUT = int(os.getenv("FIX_TIMEOUT", 1800))
FIX_ATTEMPT_CAP = int(os.getenv("FIX_ATTEMPT_CAP", 0))
FIX_COMMIT_PREFIX = os.getenv("FIX_COMMIT_PREFIX", "[fleetloop] Fix:")

# External endpoints
METRICS_URL = os.getenv("METRICS_URL", "")
REGISTRY_URL = os.getenv("REGISTRY_URL", "")
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
