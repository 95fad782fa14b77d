from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "Shorty"
    app_version: str = "1.0.0"
    environment: str = "production"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://shorty:shorty@db:5432/shorty"

    # Auth
    secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    # SCIM
    # Absolute URL used for meta.location and member $ref links. When empty the
    # URL is derived from the request (honouring X-Forwarded-* headers).
    base_url: str = ""
    scim_default_count: int = 100
    scim_max_results: int = 1000
    scim_max_members: int = 5000

    # Global organization bootstrap
    global_org_name: str = "Shorty Global"
    global_org_slug: str = "shorty-global"

    # CORS
    backend_cors_origins: list[str] = ["http://localhost", "http://localhost:5173"]

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
