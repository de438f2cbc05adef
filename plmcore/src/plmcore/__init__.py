"""
plmcore - Core library for the Palladium chat wallet

Provides keys, addresses, message encryption and shared data models.
"""

__version__ = "0.3.0"

from plmcore.constants import (
    ANONYMOUS_CONTACT_ID,
    MESSAGE_PREFIX,
    MIN_RECIPIENT_AMOUNT,
    STANDARD_DUST_LIMIT,
)
from plmcore.crypto import (
    DecryptResult,
    decode_envelope,
    decrypt_message,
    encode_envelope,
    encrypt_message,
    shared_secret,
    try_decrypt,
)
from plmcore.errors import (
    BackendConnectionError,
    BackendError,
    BroadcastError,
    ChatError,
    InsufficientFunds,
    InvalidKeyFormat,
    KeyAgreementError,
    SigningError,
    WalletNotReady,
)
from plmcore.keys import (
    KeyPair,
    derive_address,
    derive_storage_key,
    generate_keypair,
    import_wif,
    is_valid_pubkey,
    keypair_to_wif,
)
from plmcore.models import (
    BackendMode,
    ChatConfig,
    Contact,
    IncomingMessage,
    Message,
    MessageStatus,
    OutgoingMessage,
)

__all__ = [
    "ANONYMOUS_CONTACT_ID",
    "BackendConnectionError",
    "BackendError",
    "BackendMode",
    "BroadcastError",
    "ChatConfig",
    "ChatError",
    "Contact",
    "DecryptResult",
    "IncomingMessage",
    "InsufficientFunds",
    "InvalidKeyFormat",
    "KeyAgreementError",
    "KeyPair",
    "MESSAGE_PREFIX",
    "MIN_RECIPIENT_AMOUNT",
    "Message",
    "MessageStatus",
    "OutgoingMessage",
    "STANDARD_DUST_LIMIT",
    "SigningError",
    "WalletNotReady",
    "decode_envelope",
    "decrypt_message",
    "derive_address",
    "derive_storage_key",
    "encode_envelope",
    "encrypt_message",
    "generate_keypair",
    "import_wif",
    "is_valid_pubkey",
    "keypair_to_wif",
    "shared_secret",
]
