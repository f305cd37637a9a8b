"""HackLab Settings configuration.

Uses Pydantic Settings for type-safe configuration management
with support for environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hacklab.version import __version__


INSECURE_INGRESS_DOMAINS = ("localhost", "127.0.0.1")


class KubernetesSettings(BaseSettings):
    """Kubernetes configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_K8S_",
        extra="ignore",
    )

    in_cluster: bool = Field(
        default=False,
        description="Whether running inside a Kubernetes cluster",
    )
    kubeconfig: str | None = Field(
        default=None,
        description="Path to kubeconfig file (if not in-cluster)",
    )
    context: str | None = Field(
        default=None,
        description="Kubernetes context to use",
    )
    namespace_prefix: str = Field(
        default="hacklab",
        description="Prefix for per-user namespaces",
    )
    network_policy_enabled: bool = Field(
        default=False,
        description="Apply per-kind allow rules (requires a policy-enforcing CNI)",
    )
    ingress_class: str = Field(
        default="nginx",
        description="IngressClass used for lab routes",
    )
    ingress_controller_labels: dict[str, str] = Field(
        default_factory=lambda: {"app.kubernetes.io/name": "ingress-nginx"},
        description="Labels selecting the routing controller's namespace",
    )
    system_namespace: str = Field(
        default="kube-system",
        description="Namespace hosting cluster DNS",
    )
    api_timeout: int = Field(
        default=30,
        ge=1,
        description="Per-request Kubernetes API timeout in seconds",
    )


class IngressSettings(BaseSettings):
    """External route configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_INGRESS_",
        extra="ignore",
    )

    domain: str | None = Field(
        default=None,
        description="Public host name for lab routes",
    )
    port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Public port (default: 443 in production, 8100 otherwise)",
    )
    tls_secret_name: str = Field(
        default="hacklab-tls",
        description="TLS secret attached to routes in production",
    )


class LabSettings(BaseSettings):
    """Lab and desktop workload configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_LAB_",
        extra="ignore",
    )

    lab_images: dict[str, str] = Field(
        default_factory=lambda: {
            "xss": "xss_lab:latest",
            "csrf": "csrf_lab:latest",
            "nmap": "nmap_lab:latest",
        },
        description="Container image per lab type",
    )
    os_images: dict[str, str] = Field(
        default_factory=lambda: {"debian": "os-container-single-port:latest"},
        description="Container image per desktop OS type",
    )
    lab_image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = Field(
        default="Never",
        description="Pull policy for lab images (Never = node-local images)",
    )
    os_image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = Field(
        default="IfNotPresent",
        description="Pull policy for desktop images",
    )
    main_web_url: str = Field(
        default="http://localhost:3000",
        description="Front-end URL passed to lab containers",
    )
    vnc_password: SecretStr = Field(
        default=SecretStr("debian"),
        description="Password baked into desktop VNC links",
    )
    os_username: str = Field(
        default="debian",
        description="Login user inside desktop containers",
    )

    lab_timeout_minutes: int = Field(default=60, ge=1)
    os_timeout_minutes: int = Field(default=60, ge=1)

    # Orchestrator waits
    ready_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="First readiness wait, before the route exists",
    )
    final_ready_timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        description="Second readiness wait, after the route is created",
    )
    delete_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for waiting on route deletion",
    )
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    delete_poll_interval_seconds: float = Field(default=1.0, gt=0)
    route_propagation_settle_seconds: float = Field(
        default=3.0,
        ge=0,
        description="Fixed delay for the ingress controller to pick up new routes",
    )


class DatabaseSettings(BaseSettings):
    """Record store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_DB_",
        extra="ignore",
    )

    url: str | None = Field(
        default=None,
        description="SQLAlchemy URL (None = in-memory store)",
    )
    echo: bool = Field(default=False, description="Log SQL statements")


class ReconcilerSettings(BaseSettings):
    """Background status sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_RECONCILER_",
        extra="ignore",
    )

    enabled: bool = Field(
        default=True,
        description="Run the reconciler on a timer inside the API process",
    )
    interval_seconds: float = Field(default=60.0, gt=0)


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_OBSERVABILITY_",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log output format",
    )
    metrics_enabled: bool = Field(
        default=True,
        description="Expose Prometheus metrics on /metrics",
    )


class APISettings(BaseSettings):
    """HTTP API configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_API_",
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0")  # noqa: S104
    port: int = Field(default=8000, ge=1, le=65535)
    user_header: str = Field(
        default="X-User-Id",
        description="Header carrying the user id resolved by the auth proxy",
    )


class Settings(BaseSettings):
    """Main HackLab configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HACKLAB_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    version: str = Field(default=__version__)
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )

    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    ingress: IngressSettings = Field(default_factory=IngressSettings, validate_default=True)
    lab: LabSettings = Field(default_factory=LabSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    api: APISettings = Field(default_factory=APISettings)

    @field_validator("ingress", mode="after")
    @classmethod
    def validate_ingress_domain(cls, v: IngressSettings, info) -> IngressSettings:
        """Refuse to start a production deployment without a real public domain."""
        if info.data.get("environment") != "production":
            return v
        domain = (v.domain or "").strip()
        if not domain:
            msg = "HACKLAB_INGRESS_DOMAIN must be set in production"
            raise ValueError(msg)
        if any(insecure in domain for insecure in INSECURE_INGRESS_DOMAINS):
            msg = "HACKLAB_INGRESS_DOMAIN cannot be localhost in production"
            raise ValueError(msg)
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Use this function to access settings throughout the application.
    Settings are cached after first load for performance.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def reload_settings() -> Settings:
    """Force reload settings (clears cache).

    Use this when you need to reload settings from environment
    or .env file, such as during testing.

    Returns:
        Settings: Fresh settings instance.
    """
    get_settings.cache_clear()
    return get_settings()
