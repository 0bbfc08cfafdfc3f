"""Public interface for the ``statement_ingest`` package.

Ingestion and categorization core for uploaded bank statements: secret
envelopes and tenant keys, the PDF password gate, transaction fingerprints
and the rule engine. This module only re-exports symbols.
"""

from .crypto import KeyCodec, generate_key_hex
from .errors import (
    IntegrityError,
    KeyMaterialError,
    MalformedEnvelopeError,
    PdfAccessError,
    PdfIncorrectPasswordError,
    PdfPasswordRequiredError,
    StatementIngestError,
)
from .fingerprint import compute_fingerprint
from .ingest import IngestOutcome, UploadIngestor
from .models import ExtractedTransaction, ExtractionResult, TenantContext, TransactionInput
from .pdf import PdfAccessGate, PdfCheckResult
from .rules import CategorizationRule, RuleResult, apply_rules, parse_rule
from .settings import IngestSettings, load_settings
from .tenant import TenantKeyManager

__all__ = [
    # Components
    "KeyCodec",
    "TenantKeyManager",
    "PdfAccessGate",
    "UploadIngestor",
    # Functions
    "apply_rules",
    "compute_fingerprint",
    "generate_key_hex",
    "load_settings",
    "parse_rule",
    # Models / types
    "CategorizationRule",
    "ExtractedTransaction",
    "ExtractionResult",
    "IngestOutcome",
    "IngestSettings",
    "PdfCheckResult",
    "RuleResult",
    "TenantContext",
    "TransactionInput",
    # Errors
    "IntegrityError",
    "KeyMaterialError",
    "MalformedEnvelopeError",
    "PdfAccessError",
    "PdfIncorrectPasswordError",
    "PdfPasswordRequiredError",
    "StatementIngestError",
]
