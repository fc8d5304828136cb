from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "CareCore Gateway"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    API_PREFIX: str = "/api"
    DATABASE_URL: str = "sqlite:///./data/carecore.db"

    # Identity Provider (Keycloak)
    KEYCLOAK_URL: str = ""
    KEYCLOAK_REALM: str = "carecore"
    KEYCLOAK_CLIENT_ID: str = ""
    KEYCLOAK_CLIENT_SECRET: str = ""
    KEYCLOAK_ADMIN_CLIENT_ID: str = ""
    KEYCLOAK_ADMIN_CLIENT_SECRET: str = ""

    # OAuth2 Authorization Code flow
    OAUTH_SCOPES: str = "openid profile email"
    OAUTH_REDIRECT_URI: str | None = None  # Computed from the request when unset
    FRONTEND_URL: str = "http://localhost:3001"

    # Token validation
    ALLOWED_ALGORITHMS: list[str] = ["RS256"]
    JWKS_CACHE_TTL_SECONDS: int = 86400
    JWKS_REQUESTS_PER_MINUTE: int = 5

    # Upstream timeouts
    IDP_TIMEOUT_SECONDS: float = 5.0
    MFA_CHECK_TIMEOUT_SECONDS: float = 3.0

    # MFA enrollment (TOTP)
    MFA_ENCRYPTION_KEY: str = ""  # Fernet key for TOTP secrets at rest
    MFA_ENROLLMENT_TTL_SECONDS: int = 600

    # Audit
    AUDIT_QUEUE_SIZE: int = 1000

    # Practitioner verification documents
    DOCUMENT_STORAGE_PATH: str = "./data/verification-documents"
    MAX_DOCUMENT_SIZE_BYTES: int = 10 * 1024 * 1024

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def realm_url(self) -> str:
        return f"{self.KEYCLOAK_URL.rstrip('/')}/realms/{self.KEYCLOAK_REALM}"

    @property
    def issuer(self) -> str:
        return self.realm_url

    @property
    def oidc_base_url(self) -> str:
        return f"{self.realm_url}/protocol/openid-connect"

    @property
    def jwks_uri(self) -> str:
        return f"{self.oidc_base_url}/certs"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.oidc_base_url}/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.oidc_base_url}/token"

    @property
    def userinfo_endpoint(self) -> str:
        return f"{self.oidc_base_url}/userinfo"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.oidc_base_url}/logout"

    @property
    def admin_base_url(self) -> str:
        return f"{self.KEYCLOAK_URL.rstrip('/')}/admin/realms/{self.KEYCLOAK_REALM}"

settings = Settings()
