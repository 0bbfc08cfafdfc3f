# ruff: noqa: I001
"""CLI for the ``statement_ingest`` package.

Command handlers (``cmd_*``) return a process exit code; the Typer commands
below are thin wrappers that parse options and exit with that code. Key
material and ``DATABASE_URL`` come from the environment, with a local ``.env``
loaded first (see :mod:`statement_ingest.settings`). Errors are printed to
stderr and exit with status 1.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .logging_setup import configure_logging

if TYPE_CHECKING:
    from .settings import IngestSettings

console = Console()
err_console = Console(stderr=True)


def _error(message: str) -> int:
    err_console.print(f"[red]Error:[/red] {message}", highlight=False)
    return 1


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _settings_or_none(database_url: str | None = None) -> IngestSettings | None:
    """Load settings, printing a readable error instead of a traceback."""

    from .settings import load_settings

    try:
        settings = load_settings()
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]).upper() for err in e.errors() if err["loc"])
        _error(f"invalid configuration ({fields or e})")
        return None
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    return settings


# ---- Command handlers --------------------------------------------------------


def cmd_gen_key() -> int:
    from .crypto import generate_key_hex

    console.print(generate_key_hex(), highlight=False)
    return 0


def cmd_check_pdf(pdf_path: Path, password: str | None) -> int:
    from .errors import PdfIncorrectPasswordError
    from .pdf import PdfAccessGate

    try:
        data = pdf_path.read_bytes()
    except OSError as e:
        return _error(f"failed to read {pdf_path}: {e}")

    try:
        result = PdfAccessGate().check_password(data, password)
    except PdfIncorrectPasswordError as e:
        return _error(str(e))
    console.print_json(json.dumps({**result.as_dict(), "result": result.value}))
    return 0


def cmd_decrypt_pdf(pdf_path: Path, password: str, output: Path) -> int:
    from .errors import PdfAccessError
    from .pdf import PdfAccessGate

    try:
        data = pdf_path.read_bytes()
    except OSError as e:
        return _error(f"failed to read {pdf_path}: {e}")

    try:
        plain = PdfAccessGate().decrypt(data, password)
    except PdfAccessError as e:
        return _error(str(e))
    output.write_bytes(plain)
    console.print(f"Wrote {len(plain)} bytes to {output}", highlight=False)
    return 0


def cmd_fingerprint(
    *, user_id: str, tx_date: str, merchant: str, amount: int, currency: str
) -> int:
    from .fingerprint import compute_fingerprint

    try:
        fp = compute_fingerprint(
            user_id=user_id,
            date=tx_date,
            merchant_name=merchant,
            amount=amount,
            currency=currency,
        )
    except ValueError as e:
        return _error(str(e))
    console.print(fp, highlight=False)
    return 0


def cmd_apply_rules(rules_path: Path, transactions_path: Path, *, as_json: bool) -> int:
    """Dry-run a rule list against a JSON array of transactions."""

    from .models import ExtractedTransaction
    from .rules import apply_rules_to_all, parse_rule

    try:
        raw_rules = _load_json(rules_path)
        raw_txs = _load_json(transactions_path)
    except (OSError, json.JSONDecodeError) as e:
        return _error(f"failed to load input: {e}")
    if not isinstance(raw_rules, list) or not isinstance(raw_txs, list):
        return _error("rules and transactions files must each contain a JSON array")

    rules = [parse_rule(r) for r in raw_rules if r.get("enabled", True)]
    try:
        txs = [ExtractedTransaction.model_validate(t).to_input() for t in raw_txs]
    except ValidationError as e:
        return _error(f"invalid transaction: {e}")

    results = apply_rules_to_all(txs, rules)

    if as_json:
        console.print_json(json.dumps([r.as_dict() for r in results]))
        return 0

    table = Table(title="Rule evaluation")
    table.add_column("Date")
    table.add_column("Merchant")
    table.add_column("Amount", justify="right")
    table.add_column("Rules", justify="right")
    table.add_column("Outcome")
    for tx, res in zip(txs, results, strict=True):
        if res.skip:
            outcome = "[yellow]ignored[/yellow]"
        else:
            parts = []
            if res.overrides.amount is not None:
                parts.append(f"amount={res.overrides.amount}")
            if res.overrides.category_id is not None:
                parts.append(f"category={res.overrides.category_id}")
            outcome = ", ".join(parts) or "-"
        table.add_row(
            str(tx.date), tx.merchant_name, str(tx.amount), str(res.rules_applied), outcome
        )
    console.print(table)
    return 0


def cmd_tenant_resolve(user_id: str, *, database_url: str | None) -> int:
    from db.client import session_scope

    from .tenant import TenantKeyManager

    settings = _settings_or_none(database_url)
    if settings is None:
        return 1
    manager = TenantKeyManager(settings.kek_codec())
    try:
        with session_scope(database_url=settings.database_url) as session:
            tenant = manager.resolve_or_create(session, user_id)
    except RuntimeError as e:
        return _error(str(e))
    console.print(tenant.tenant_id, highlight=False)
    return 0


def cmd_tenant_whois(tenant_id: str, *, database_url: str | None) -> int:
    from db.client import session_scope

    from .tenant import TenantKeyManager

    settings = _settings_or_none(database_url)
    if settings is None:
        return 1
    manager = TenantKeyManager(settings.kek_codec())
    with session_scope(database_url=settings.database_url) as session:
        user_id = manager.reverse_lookup(session, tenant_id)
    if user_id is None:
        return _error(f"tenant {tenant_id} not found")
    console.print(user_id, highlight=False)
    return 0


def cmd_add_rule(user_id: str, rule_path: Path, *, database_url: str | None) -> int:
    from db.client import session_scope

    from .persistence import RuleDefinition, create_rule
    from .tenant import TenantKeyManager

    settings = _settings_or_none(database_url)
    if settings is None:
        return 1
    try:
        definition = RuleDefinition.model_validate(_load_json(rule_path))
    except (OSError, json.JSONDecodeError) as e:
        return _error(f"failed to load rule: {e}")
    except ValidationError as e:
        return _error(f"invalid rule: {e}")

    manager = TenantKeyManager(settings.kek_codec())
    with session_scope(database_url=settings.database_url) as session:
        tenant = manager.resolve_or_create(session, user_id)
        rule_id = create_rule(session, tenant.tenant_id, definition)
    console.print(rule_id, highlight=False)
    return 0


def cmd_set_password(
    user_id: str, upload_id: str, password: str, *, database_url: str | None
) -> int:
    from db.client import session_scope

    from .persistence import store_upload_password
    from .tenant import TenantKeyManager

    settings = _settings_or_none(database_url)
    if settings is None:
        return 1
    manager = TenantKeyManager(settings.kek_codec())
    try:
        with session_scope(database_url=settings.database_url) as session:
            tenant = manager.resolve_or_create(session, user_id)
            store_upload_password(
                session, tenant.tenant_id, upload_id, password, settings.password_codec()
            )
    except LookupError as e:
        return _error(str(e))
    console.print(f"Password stored for upload {upload_id}", highlight=False)
    return 0


def cmd_ingest(
    pdf_path: Path,
    *,
    user_id: str,
    upload_id: str,
    extraction_path: Path,
    write_decrypted: Path | None,
    database_url: str | None,
) -> int:
    from .ingest import JsonFileExtractor, UploadIngestor
    from .pdf import PdfAccessGate
    from .tenant import TenantKeyManager

    settings = _settings_or_none(database_url)
    if settings is None:
        return 1
    try:
        document = pdf_path.read_bytes()
    except OSError as e:
        return _error(f"failed to read {pdf_path}: {e}")

    ingestor = UploadIngestor(
        TenantKeyManager(settings.kek_codec()),
        PdfAccessGate(),
        JsonFileExtractor(extraction_path),
        settings.password_codec(),
        database_url=settings.database_url,
        confidence_threshold=settings.confidence_threshold,
    )
    try:
        outcome = ingestor.run(document, user_id=user_id, upload_id=upload_id)
    except (LookupError, OSError, json.JSONDecodeError) as e:
        return _error(str(e))

    if outcome.decrypted_document is not None and write_decrypted is not None:
        write_decrypted.write_bytes(outcome.decrypted_document)
    console.print_json(json.dumps(outcome.as_dict()))
    return 1 if outcome.status == "failed" else 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Bank statement ingestion: PDF password gate, tenant keys, fingerprints "
        "and categorization rules. Loads configuration from a local .env."
    ),
)
tenant_app = typer.Typer(no_args_is_help=True, help="Tenant resolution and lookup.")
app.add_typer(tenant_app, name="tenant")

DatabaseUrlOption = Annotated[
    str | None, typer.Option(help="Override DATABASE_URL (falls back to env var).")
]
UserIdOption = Annotated[str, typer.Option(help="Owner's user id.")]


def _exit(code: int) -> None:
    if code:
        raise typer.Exit(code)


@app.command("gen-key")
def gen_key_cmd() -> None:
    """Print a fresh 256-bit key as hex (for DATA_ENCRYPTION_KEK and friends)."""

    _exit(cmd_gen_key())


@app.command("check-pdf")
def check_pdf_cmd(
    pdf_path: Annotated[Path, typer.Argument(dir_okay=False, help="PDF to inspect.")],
    password: Annotated[str | None, typer.Option(help="Password to validate.")] = None,
) -> None:
    """Report whether a PDF is encrypted and whether a password unlocks it."""

    _exit(cmd_check_pdf(pdf_path, password))


@app.command("decrypt-pdf")
def decrypt_pdf_cmd(
    pdf_path: Annotated[Path, typer.Argument(dir_okay=False, help="Encrypted PDF.")],
    output: Annotated[Path, typer.Option("--output", "-o", help="Where to write the copy.")],
    password: Annotated[
        str, typer.Option(prompt=True, hide_input=True, help="Document password.")
    ],
) -> None:
    """Write an unencrypted copy of a password-protected PDF."""

    _exit(cmd_decrypt_pdf(pdf_path, password, output))


@app.command("fingerprint")
def fingerprint_cmd(
    user_id: UserIdOption,
    tx_date: Annotated[str, typer.Option("--date", help="Transaction date (YYYY-MM-DD).")],
    merchant: Annotated[str, typer.Option(help="Merchant name as extracted.")],
    amount: Annotated[int, typer.Option(help="Signed amount in minor units.")],
    currency: Annotated[str, typer.Option(help="ISO 4217 code.")],
) -> None:
    """Print the deduplication fingerprint of one transaction."""

    _exit(
        cmd_fingerprint(
            user_id=user_id, tx_date=tx_date, merchant=merchant, amount=amount, currency=currency
        )
    )


@app.command("apply-rules")
def apply_rules_cmd(
    rules_path: Annotated[Path, typer.Option("--rules", help="JSON array of rules.")],
    transactions_path: Annotated[
        Path, typer.Option("--transactions", help="JSON array of transactions.")
    ],
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON instead of a table.")] = False,
) -> None:
    """Evaluate rules against transactions without touching the database."""

    _exit(cmd_apply_rules(rules_path, transactions_path, as_json=as_json))


@app.command("add-rule")
def add_rule_cmd(
    user_id: UserIdOption,
    rule_path: Annotated[Path, typer.Option("--rule", help="JSON rule definition.")],
    database_url: DatabaseUrlOption = None,
) -> None:
    """Validate and store a categorization rule for the user's tenant."""

    _exit(cmd_add_rule(user_id, rule_path, database_url=database_url))


@app.command("set-password")
def set_password_cmd(
    user_id: UserIdOption,
    upload_id: Annotated[str, typer.Option(help="Upload waiting for a password.")],
    password: Annotated[
        str, typer.Option(prompt=True, hide_input=True, help="Document password.")
    ],
    database_url: DatabaseUrlOption = None,
) -> None:
    """Store a document password for an upload and re-queue it."""

    _exit(cmd_set_password(user_id, upload_id, password, database_url=database_url))


@app.command("ingest")
def ingest_cmd(
    pdf_path: Annotated[Path, typer.Argument(dir_okay=False, help="Uploaded document.")],
    user_id: UserIdOption,
    upload_id: Annotated[str, typer.Option(help="Upload row to process.")],
    extraction_path: Annotated[
        Path, typer.Option("--extraction", help="JSON extraction result for the document.")
    ],
    write_decrypted: Annotated[
        Path | None, typer.Option(help="Write the unencrypted copy here when one is produced.")
    ] = None,
    database_url: DatabaseUrlOption = None,
) -> None:
    """Run one upload through the gate, rules, deduplication and persistence."""

    _exit(
        cmd_ingest(
            pdf_path,
            user_id=user_id,
            upload_id=upload_id,
            extraction_path=extraction_path,
            write_decrypted=write_decrypted,
            database_url=database_url,
        )
    )


@tenant_app.command("resolve")
def tenant_resolve_cmd(user_id: UserIdOption, database_url: DatabaseUrlOption = None) -> None:
    """Print the user's tenant id, provisioning the tenant on first use."""

    _exit(cmd_tenant_resolve(user_id, database_url=database_url))


@tenant_app.command("whois")
def tenant_whois_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id to look up.")],
    database_url: DatabaseUrlOption = None,
) -> None:
    """Print the user id owning a tenant (operators only)."""

    _exit(cmd_tenant_whois(tenant_id, database_url=database_url))


@app.callback()
def _root(
    log_level: Annotated[
        str | None, typer.Option(help="Log level (default: STATEMENT_INGEST_LOG_LEVEL or INFO).")
    ] = None,
) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


if __name__ == "__main__":  # pragma: no cover
    app()
