from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TokenSet(BaseModel):
    """Tokens returned by the identity provider. The refresh token is never parsed."""
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(serialization_alias="accessToken")
    refresh_token: str = Field(default="", serialization_alias="refreshToken")
    expires_in: int = Field(default=3600, serialization_alias="expiresIn")
    token_type: str = Field(default="Bearer", serialization_alias="tokenType")

    @classmethod
    def from_provider(cls, data: dict, fallback_refresh_token: str = "") -> "TokenSet":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_in=int(data.get("expires_in") or 3600),
            token_type=data.get("token_type") or "Bearer",
        )


class AuthorizationRequest(BaseModel):
    authorization_url: str = Field(serialization_alias="authorizationUrl")
    state: str
    message: str = (
        "Visit this URL in your browser to log in. "
        "For browser use, omit the returnUrl parameter for automatic redirect."
    )


class RefreshTokenRequest(BaseModel):
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )


class MfaStatus(BaseModel):
    mfa_enabled: bool
    mfa_required: bool
    message: str
