# Core module exports
from core.config import settings, get_settings, StorageConfig, InvalidationPolicy
from core.logging import (
    configure_logging,
    get_logger,
    bind_context,
    clear_context,
    generate_correlation_id,
    api_logger,
    cache_logger,
    catalog_logger,
    progress_logger,
    selector_logger,
)
from core.security import UserIdentity, resolve_identity, get_current_identity
