from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kitcache.core.aggregates import DEFAULT_CATEGORIES, AggregateThresholds
from kitcache.core.cache_store import CachePolicy
from kitcache.core.retry import RetryClassifier, RetryConfiguration


class KitCacheSettings(BaseSettings):
    """kitcache configuration settings, read from ``KITCACHE_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="KITCACHE_", env_file=".env", extra="ignore"
    )

    stale_after_seconds: float = Field(
        300.0, ge=0, description="Age after which cached entities and lists are stale."
    )
    evict_after_seconds: float = Field(
        600.0, ge=0, description="Unobserved time after which entries are evicted."
    )
    cleanup_interval_seconds: float | None = Field(
        60.0, description="Interval of the periodic eviction pass; None disables it."
    )
    aggregate_stale_after_seconds: float = Field(
        60.0, ge=0, description="Freshness window of authoritative aggregate counts."
    )
    aggregate_evict_after_seconds: float = Field(
        300.0, ge=0, description="Retention window of authoritative aggregate counts."
    )
    settle_delay_seconds: float = Field(
        0.25, ge=0, description="Delay before a settled mutation is reconciled."
    )

    aggregate_coverage_threshold: float = Field(
        0.8,
        ge=0,
        le=1,
        description="Minimum cached share of the population for cache-derived counts.",
    )
    aggregate_min_cached: int = Field(
        50, ge=0, description="Cached entities required before counts are derived."
    )
    aggregate_category_field: str = Field(
        "status", description="Entity field aggregate counts are grouped by."
    )
    aggregate_categories: tuple[str, ...] = Field(
        DEFAULT_CATEGORIES, description="Categories always present in counts."
    )

    query_max_retries: int = Field(2, ge=0, description="Retries for reads.")
    mutation_max_retries: int = Field(1, ge=0, description="Retries for updates.")
    status_max_retries: int = Field(3, ge=0, description="Retries for status flips.")
    delete_max_retries: int = Field(1, ge=0, description="Retries for deletes.")
    retry_initial_delay_seconds: float = Field(
        1.0, ge=0, description="Backoff before the first retry."
    )
    retry_max_delay_seconds: float = Field(
        30.0, ge=0, description="Upper bound of any backoff delay."
    )
    retry_backoff_multiplier: float = Field(
        2.0, ge=1, description="Growth factor of consecutive backoff delays."
    )
    retry_jitter_factor: float = Field(
        0.1, ge=0, lt=1, description="Relative random spread applied to delays."
    )

    default_page_size: int = Field(25, ge=1, description="Default list page size.")
    log_level: str = Field("INFO", description="Log level of the stderr sink.")
    debug_scopes: list[str] = Field(
        default_factory=list,
        description="Modules (e.g. core.mutations) always logged at DEBUG.",
    )

    def cache_policy(self) -> CachePolicy:
        return CachePolicy(self.stale_after_seconds, self.evict_after_seconds)

    def aggregate_policy(self) -> CachePolicy:
        return CachePolicy(
            self.aggregate_stale_after_seconds, self.aggregate_evict_after_seconds
        )

    def aggregate_thresholds(self) -> AggregateThresholds:
        return AggregateThresholds(
            coverage_threshold=self.aggregate_coverage_threshold,
            min_cached=self.aggregate_min_cached,
            category_field=self.aggregate_category_field,
            categories=tuple(self.aggregate_categories),
        )

    def retry_configuration(self, max_retries: int) -> RetryConfiguration:
        return RetryConfiguration(
            max_retries=max_retries,
            initial_delay_seconds=self.retry_initial_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter_factor=self.retry_jitter_factor,
        )

    def retry_classifier(self, name: str) -> RetryClassifier:
        """Classifier for ``query``, ``mutation``, ``status`` or ``delete``."""
        max_retries = getattr(self, f"{name}_max_retries")
        return RetryClassifier(self.retry_configuration(max_retries), name=name)
