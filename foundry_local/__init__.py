"""foundry-local -- model lifecycle manager for a local inference service."""

from .cache import CacheEntry, CacheStore, DownloadProgress
from .catalog import Catalog, ModelFile, ModelVariant
from .config import ManagerConfig, load_config
from .errors import (
    CatalogUnavailable,
    DownloadFailed,
    FoundryLocalError,
    IntegrityError,
    LoadRejected,
    ManagerClosed,
    NoCompatibleVariant,
    NotCached,
    OperationTimeout,
    ServiceLaunchFailed,
    ServiceStartTimeout,
    VariantNotFound,
)
from .gate import SerializationGate
from .hardware import Hardware, HardwareProfile, detect_hardware
from .manager import LifecycleManager, LoadedModelHandle, LoadStatus, Transition
from .selector import VariantSelector, rank_variants, select_variant
from .service import ServiceEndpoint, ServiceLocator

__all__ = [
    "CacheEntry",
    "CacheStore",
    "DownloadProgress",
    "Catalog",
    "ModelFile",
    "ModelVariant",
    "ManagerConfig",
    "load_config",
    "FoundryLocalError",
    "CatalogUnavailable",
    "VariantNotFound",
    "NoCompatibleVariant",
    "DownloadFailed",
    "IntegrityError",
    "NotCached",
    "ServiceLaunchFailed",
    "ServiceStartTimeout",
    "LoadRejected",
    "OperationTimeout",
    "ManagerClosed",
    "SerializationGate",
    "Hardware",
    "HardwareProfile",
    "detect_hardware",
    "LifecycleManager",
    "LoadedModelHandle",
    "LoadStatus",
    "Transition",
    "VariantSelector",
    "rank_variants",
    "select_variant",
    "ServiceEndpoint",
    "ServiceLocator",
]
__version__ = "0.1.0"
