from pydantic import BaseModel, ConfigDict, Field


class GoogleAuthIn(BaseModel):
    id_token: str = Field(min_length=10)

    model_config = ConfigDict(json_schema_extra={"example": {"id_token": "eyJhbGciOiJSUzI1NiIsImtpZCI6..."}})


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class AdminOut(BaseModel):
    email: str
    full_name: str | None = None
