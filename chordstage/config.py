"""Tunable constants shared across the live-session components."""

import os
import tempfile

# ── Auto-scroll ─────────────────────────────────────────────────────────────

SCROLL_TICK_SEC = 0.05            # fixed timer tick (50 ms)
BASELINE_LINE_HEIGHT_PX = 160     # pixel height of one displayed line at zoom 1.0
BEATS_PER_LINE_FACTOR = 4         # one line covers N x 4 beats for an N/M signature
MIN_SCROLL_SPEED = 0.1
MAX_SCROLL_SPEED = 3.0
DEFAULT_SCROLL_SPEED = 1.0

# ── Performance defaults ────────────────────────────────────────────────────

DEFAULT_TEMPO = 120
DEFAULT_TIME_SIGNATURE = "4/4"
DEFAULT_BARS_PER_LINE = 4

# ── Channel / presence ──────────────────────────────────────────────────────

CHANNEL_PREFIX = "live-session-"
# Delay before the owner answers a newly seen peer with a full setlist-sync
SYNC_SETTLE_DELAY_SEC = 1.0

# ── Offline / local network ─────────────────────────────────────────────────

UDP_SYNC_PORT = 38475
UDP_BROADCAST_ADDR = "255.255.255.255"
TCP_SYNC_PORT = 8765
CONNECT_TIMEOUT_SEC = 5.0
MD_PROBE_TIMEOUT_SEC = 1.5
MAX_DATAGRAM_BYTES = 60_000
TCP_FRAME_LIMIT_BYTES = 16 * 1024 * 1024  # longest accepted relay line

# ── Local storage ───────────────────────────────────────────────────────────

DATA_DIR = os.environ.get(
    "CHORDSTAGE_DATA_DIR",
    os.path.join(os.path.expanduser("~"), ".chordstage"),
)
PREFERENCES_FILE = os.path.join(DATA_DIR, "preferences.json")
LOG_DIR = os.path.join(os.environ.get("TEMP", tempfile.gettempdir()), "chordstage")
