"""
Shared enumerations for database models.

Using Python enums mapped to database enums ensures that
only valid values can be stored. New activity kinds are added
here and nowhere else.
"""

import enum


class ActivityKind(str, enum.Enum):
    """What a tracked operation did."""
    # Account operations
    ACCOUNT_CREATE = "ACCOUNT_CREATE"
    ACCOUNT_AUTO_CREATE = "ACCOUNT_AUTO_CREATE"
    ACCOUNT_DELETE = "ACCOUNT_DELETE"
    ACCOUNT_UPDATE = "ACCOUNT_UPDATE"
    ACCOUNT_VIEW = "ACCOUNT_VIEW"
    ACCOUNT_BULK_DELETE = "ACCOUNT_BULK_DELETE"

    # User operations
    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILURE = "USER_LOGIN_FAILURE"
    USER_LOGOUT = "USER_LOGOUT"
    USER_REGISTER = "USER_REGISTER"
    USER_UPDATE_PROFILE = "USER_UPDATE_PROFILE"

    # System operations
    SYSTEM_BACKUP = "SYSTEM_BACKUP"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    DATA_EXPORT = "DATA_EXPORT"
    DATA_IMPORT = "DATA_IMPORT"


# Kinds counted by the rapid-creation heuristic
ACCOUNT_CREATION_KINDS = frozenset({
    ActivityKind.ACCOUNT_CREATE,
    ActivityKind.ACCOUNT_AUTO_CREATE,
})


class ActivityStatus(str, enum.Enum):
    """Lifecycle of an activity record. PENDING is the only initial state."""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"


class EntityType(str, enum.Enum):
    """Kind of entity an operation touched."""
    ACCOUNT = "Account"
    USER = "User"
    PLATFORM = "Platform"
    NAME_DATA = "NameData"
    SYSTEM = "System"


class CallerRole(str, enum.Enum):
    """Role supplied by the identity collaborator."""
    USER = "user"
    ADMIN = "admin"


class ExportFormat(str, enum.Enum):
    JSON = "json"
    CSV = "csv"
