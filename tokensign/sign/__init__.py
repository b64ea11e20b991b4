from .errors import (
    CertValidationCode,
    SigningErrorCode,
    SigningResult,
    TokenSignError,
)
from .pdf_signer import (
    PdfSignatureRequest,
    PdfSigningEngine,
    SigningSettings,
    SignOutcome,
)
from .pkcs11 import TokenSessionManager

__all__ = [
    'CertValidationCode',
    'SigningErrorCode',
    'SigningResult',
    'TokenSignError',
    'PdfSignatureRequest',
    'PdfSigningEngine',
    'SigningSettings',
    'SignOutcome',
    'TokenSessionManager',
]
