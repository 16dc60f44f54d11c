"""
Per-kind metadata schemas.

Each activity kind owns a typed metadata shape. The union is
discriminated on ``kind`` so a stored payload always says which
variant it is.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class AccountCreateMetadata(BaseModel):
    kind: Literal["ACCOUNT_CREATE", "ACCOUNT_AUTO_CREATE"]
    auto_generated: bool = False
    policy_code: str | None = Field(default=None, max_length=100)


class BulkDeleteMetadata(BaseModel):
    kind: Literal["ACCOUNT_BULK_DELETE"]
    deleted_count: int = Field(ge=0)
    entity_ids: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)


class LoginFailureMetadata(BaseModel):
    kind: Literal["USER_LOGIN_FAILURE"]
    reason: str = Field(min_length=1, max_length=255)


class DataTransferMetadata(BaseModel):
    kind: Literal["DATA_EXPORT", "DATA_IMPORT"]
    row_count: int = Field(ge=0)
    format: str | None = Field(default=None, max_length=20)


class BasicMetadata(BaseModel):
    kind: Literal[
        "ACCOUNT_DELETE",
        "ACCOUNT_UPDATE",
        "ACCOUNT_VIEW",
        "USER_LOGIN",
        "USER_LOGOUT",
        "USER_REGISTER",
        "USER_UPDATE_PROFILE",
        "SYSTEM_BACKUP",
        "SYSTEM_MAINTENANCE",
    ]
    note: str | None = Field(default=None, max_length=500)


ActivityMetadata = Annotated[
    Union[
        AccountCreateMetadata,
        BulkDeleteMetadata,
        LoginFailureMetadata,
        DataTransferMetadata,
        BasicMetadata,
    ],
    Field(discriminator="kind"),
]
