"""Configuration and constructed (cached) state as module-level attributes."""

import os
import tempfile
from pathlib import Path

from fleetreleaseoperator.version import get_version

namespace = os.environ.get("FRO_NAMESPACE", "fleet-release-system")
"""The namespace holding the cluster credential secrets."""

workers = int(os.environ.get("FRO_WORKERS", "2"))
"""Number of workers that run handlers concurrently."""

chart_cache_dir = Path(
    os.environ.get(
        "FRO_CHART_CACHE_DIR",
        os.path.join(tempfile.gettempdir(), "chart-cache"),
    )
)
"""Location of the local cache of downloaded chart archives."""

credential_dir = Path(
    os.environ.get(
        "FRO_CREDENTIAL_DIR",
        os.path.join(tempfile.gettempdir(), "cluster-credentials"),
    )
)
"""Location where cluster TLS material is written for the API clients."""

rest_timeout = float(os.environ.get("FRO_REST_TIMEOUT", "10"))
"""Timeout, in seconds, of requests to target clusters. Does not affect
watches.
"""

watch_timeout = int(os.environ.get("FRO_WATCH_TIMEOUT", "300"))
"""Seconds a single credential watch runs before the store re-lists."""

max_retries = int(os.environ.get("FRO_MAX_RETRIES", "5"))
"""Transient failures tolerated before they are recorded in status."""

retry_delay = float(os.environ.get("FRO_RETRY_DELAY", "15"))

capacity_interval = float(os.environ.get("FRO_CAPACITY_INTERVAL", "30"))

user_agent = f"fleet-release-operator/{get_version()}"
"""Base user agent for clients built by the cluster client store."""

store = None
"""The process-wide `ClusterClientStore`, set on operator start-up."""

catalog = None
"""The process-wide `ChartCatalog`, set on operator start-up."""

stop_event = None
"""The `threading.Event` that stops the cluster client store."""

store_thread = None
"""The thread running the cluster client store's watch loop."""
