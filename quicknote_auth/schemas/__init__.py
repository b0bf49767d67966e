from .identity import IdentityProfile
from .devices import (
    DeviceInfo,
    DeviceVerification,
    RegisteredDevices,
    DeviceListResponse
)
from .records import (
    EncryptionScheme,
    MigrationAction,
    EncryptedRecord,
    AuthSession
)
from .auth import (
    CodeRequest,
    ExistingSecretRequest,
    AuthStateResponse
)
