from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase (deployment records + auth)
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Background workers write records with this key

    # Record store backend: memory | supabase
    record_store: str = "memory"

    # Content store backend: memory | s3
    content_store: str = "memory"

    # S3-compatible content store (will read from uppercase env vars automatically)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-east-1"
    s3_bucket_name: Optional[str] = None
    s3_endpoint_url: Optional[str] = None  # e.g. https://<account>.r2.cloudflarestorage.com

    # Serving
    serving_domain: str = "deploy.localhost"
    public_url_scheme: str = "https"
    cache_max_age: int = 3600

    # Build executor
    build_image: Optional[str] = None  # Run builds in this container image; local process when unset
    build_shell: str = "/bin/sh"
    docker_binary: str = "docker"
    build_memory_limit: str = "2g"
    build_cpu_limit: str = "1.0"
    build_workdir_root: Optional[str] = None
    build_timeout_sec: int = 1800  # 0 disables the limit
    dispose_grace_sec: float = 5.0

    # Build defaults
    default_branch: str = "main"
    default_build_command: str = "npm run build"
    default_install_command: str = "npm install"
    default_output_dir: str = "dist"
    default_node_version: str = "lts/*"

    # Build logs
    log_flush_interval_sec: float = 2.0
    log_tail_lines: int = 50
    log_subscriber_queue_size: int = 1000
    log_closed_group_retention: int = 1000

    # App
    app_name: str = "deploy-pipeline"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"
    deploy_rate_limit: str = "20/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
