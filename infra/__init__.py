"""Infrastructure modules for the risk monitor"""

from .alerting import AlertService, AlertSeverity, AlertingListener  # noqa: F401
from .events import EventDispatcher  # noqa: F401
from .instance_lock import SingleInstanceLock  # noqa: F401
from .kv_store import (  # noqa: F401
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
    create_kv_store_from_config,
)
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"AlertingListener",
	"EventDispatcher",
	"SingleInstanceLock",
	"KeyValueStore",
	"MemoryKeyValueStore",
	"JsonFileKeyValueStore",
	"RedisKeyValueStore",
	"create_kv_store_from_config",
	"MetricsRecorder",
	"TickStats",
	"RateLimiter",
]
