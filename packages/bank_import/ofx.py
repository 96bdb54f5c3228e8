"""Tolerant parser for OFX/QFX bank statement downloads.

Both OFX 1.x (SGML with unclosed leaf elements, preceded by a ``KEY:VALUE``
header block) and OFX 2.x (XML) documents are accepted. Rather than relying
on an XML parser, the body is tokenized into tags and text and folded into a
small node tree; leaf elements that never close are closed implicitly and
stray end tags are ignored.

Public surface:
- ``parse(stream, file_name)`` returns a :class:`~bank_import.models.ParseResult`.
  It never raises for malformed input; problems are reported as
  :class:`~bank_import.models.ParseError` entries and parsing continues with
  the next transaction line where possible.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from html import unescape
from typing import IO

from .logging_setup import get_logger
from .models import ParsedCandidate, ParseError, ParseResult

_logger = get_logger("bank_import.ofx")

# Error codes carried on ParseError.code
ERR_DOCUMENT = "document"
ERR_STATEMENT = "statement"
ERR_TRANSACTION = "transaction"
ERR_MISSING_IDENTIFIER = "missing_identifier"

# OFX CHARSET/ENCODING header values mapped to Python codecs
_CHARSET_MAP: dict[str, str] = {
    "1252": "cp1252",
    "WINDOWS-1252": "cp1252",
    "CP1252": "cp1252",
    "ISO-8859-1": "latin-1",
    "8859-1": "latin-1",
    "LATIN-1": "latin-1",
    "UTF-8": "utf-8",
    "UTF8": "utf-8",
    "ASCII": "ascii",
    "USASCII": "ascii",
    "US-ASCII": "ascii",
}

# Display names for BANKACCTFROM/ACCTTYPE values
_ACCOUNT_TYPES: dict[str, str] = {
    "CHECKING": "Checking",
    "SAVINGS": "Savings",
    "MONEYMRKT": "Money market",
    "CREDITLINE": "Credit line",
    "CD": "CD",
}
_CREDIT_CARD = "Credit card"

_STATEMENT_TAGS = frozenset({"STMTRS", "CCSTMTRS"})

_HEADER_LINE_RE = re.compile(r"^\s*([A-Z]+)\s*:\s*(\S*)\s*$")
_XML_ENCODING_RE = re.compile(rb"<\?xml[^>]*encoding\s*=\s*[\"']([A-Za-z0-9_.:-]+)[\"']", re.I)
_IGNORED_MARKUP_RE = re.compile(r"<\?.*?\?>|<!--.*?-->|<!\[CDATA\[.*?\]\]>", re.S)
_TOKEN_RE = re.compile(r"<(/?)([A-Za-z][A-Za-z0-9_.]*)[^>]*>")
_OFX_ROOT_RE = re.compile(r"<OFX[\s>]", re.I)
_DATE_RE = re.compile(r"^\s*(\d{4})-?(\d{2})-?(\d{2})")
_WS_RE = re.compile(r"\s+")

# Ledger amounts are NUMERIC(18, 2): at most 16 integer digits.
_MAX_AMOUNT = Decimal("1e16")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _read_raw(stream: IO[bytes] | IO[str] | bytes | str | None) -> bytes | str | None:
    if stream is None:
        return None
    if isinstance(stream, (bytes, bytearray, memoryview)):
        return bytes(stream)
    if isinstance(stream, str):
        return stream
    return stream.read()


def _header_encoding(raw: bytes) -> str | None:
    m = _XML_ENCODING_RE.search(raw[:512])
    if m:
        return _CHARSET_MAP.get(m.group(1).decode("ascii").upper(), m.group(1).decode("ascii"))

    headers: dict[str, str] = {}
    for line in raw[:1024].decode("latin-1").splitlines():
        if line.lstrip().startswith("<"):
            break
        hm = _HEADER_LINE_RE.match(line)
        if hm:
            headers[hm.group(1)] = hm.group(2).upper()

    charset = headers.get("CHARSET", "")
    if charset in _CHARSET_MAP:
        return _CHARSET_MAP[charset]
    return _CHARSET_MAP.get(headers.get("ENCODING", ""))


def _decode(raw: bytes) -> str:
    """Decode raw statement bytes, honouring the OFX header charset when known."""

    if raw.startswith(b"\xef\xbb\xbf"):
        return raw[3:].decode("utf-8", errors="replace")
    encoding = _header_encoding(raw)
    if encoding:
        try:
            return raw.decode(encoding, errors="replace")
        except LookupError:
            _logger.debug("ofx:unknown_encoding encoding=%s", encoding)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("cp1252", errors="replace")


# ---------------------------------------------------------------------------
# Tokenizing and tree building
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Node:
    tag: str
    text: str = ""
    children: list[_Node] = field(default_factory=list)


def _tokens(body: str) -> Iterator[tuple[str, str]]:
    """Yield ``("start"|"end", TAG)`` and ``("text", value)`` tokens."""

    pos = 0
    for m in _TOKEN_RE.finditer(body):
        if m.start() > pos:
            yield "text", body[pos : m.start()]
        yield ("end" if m.group(1) else "start"), m.group(2).upper()
        pos = m.end()
    if pos < len(body):
        yield "text", body[pos:]


def _build_tree(body: str) -> _Node:
    root = _Node(tag="#document")
    stack: list[_Node] = [root]
    for kind, value in _tokens(_IGNORED_MARKUP_RE.sub("", body)):
        if kind == "text":
            value = value.strip()
            if value and len(stack) > 1:
                top = stack[-1]
                top.text = f"{top.text} {value}" if top.text else value
            continue
        # An element that already carries text is a leaf; in SGML it is
        # never explicitly closed, so close it before anything else happens.
        if len(stack) > 1 and stack[-1].text and (kind == "start" or stack[-1].tag != value):
            stack.pop()
        if kind == "start":
            node = _Node(tag=value)
            stack[-1].children.append(node)
            stack.append(node)
            continue
        for depth in range(len(stack) - 1, 0, -1):
            if stack[depth].tag == value:
                del stack[depth:]
                break
        # Unmatched end tags are dropped.
    return root


def _find(node: _Node, *path: str) -> _Node | None:
    """Depth-first lookup of the first descendant matching each tag in turn."""

    current: _Node | None = node
    for tag in path:
        if current is None:
            return None
        current = _first_descendant(current, tag)
    return current


def _first_descendant(node: _Node, tag: str) -> _Node | None:
    for child in node.children:
        if child.tag == tag:
            return child
        found = _first_descendant(child, tag)
        if found is not None:
            return found
    return None


def _find_all(node: _Node, tags: frozenset[str]) -> list[_Node]:
    """Collect descendants whose tag is in ``tags`` (document order, non-nested)."""

    out: list[_Node] = []
    for child in node.children:
        if child.tag in tags:
            out.append(child)
        else:
            out.extend(_find_all(child, tags))
    return out


def _text(node: _Node, tag: str) -> str | None:
    found = _first_descendant(node, tag)
    if found is None:
        return None
    value = unescape(found.text).strip()
    return value or None


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------


def _parse_date(value: str | None) -> date | None:
    """Parse ``YYYYMMDD[hhmmss[.xxx]][[tz]]`` or ``YYYY-MM-DD`` into a date."""

    if not value:
        return None
    m = _DATE_RE.match(value)
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def _parse_amount(value: str | None) -> Decimal | None:
    if not value:
        return None
    s = value.strip().replace(" ", "")
    # Some European exports use a comma as the decimal mark.
    if "," in s and "." not in s:
        s = s.replace(",", ".")
    try:
        amount = Decimal(s)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount.copy_abs() >= _MAX_AMOUNT:
        return None
    return amount


def _collapse(value: str) -> str:
    return _WS_RE.sub(" ", value).strip().casefold()


def resolve_payee(name: str | None, memo: str | None) -> tuple[str | None, str | None]:
    """Return ``(payee, memo)`` for a transaction line.

    The descriptive name wins when present. Banks commonly truncate NAME to 32
    characters and repeat the full text in MEMO; when MEMO starts with NAME
    the memo is taken as the payee and not repeated as a memo.
    """

    if not name:
        return memo, None
    if memo and _collapse(memo).startswith(_collapse(name)):
        return memo, None
    return name, memo


def _account_label(statement: _Node) -> tuple[str, str | None]:
    if statement.tag == "CCSTMTRS":
        acct = _find(statement, "CCACCTFROM")
        return _CREDIT_CARD, (_text(acct, "ACCTID") if acct is not None else None)
    acct = _find(statement, "BANKACCTFROM")
    if acct is None:
        return "Bank", None
    raw_type = (_text(acct, "ACCTTYPE") or "").upper()
    label = _ACCOUNT_TYPES.get(raw_type) or (raw_type.capitalize() if raw_type else "Bank")
    return label, _text(acct, "ACCTID")


def build_source(institution: str | None, account_type: str, account_id: str | None) -> str:
    """``"{Institution} - {AccountType} ({AccountId})"`` with blank parts omitted."""

    parts: list[str] = []
    if institution and institution.strip():
        parts.append(institution.strip())
    if account_id and account_id.strip():
        parts.append(f"{account_type} ({account_id.strip()})")
    else:
        parts.append(account_type)
    return " - ".join(parts)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _parse_statement(
    statement: _Node,
    *,
    source: str,
    file_name: str | None,
    candidates: list[ParsedCandidate],
    errors: list[ParseError],
) -> None:
    for line_no, trn in enumerate(_find_all(statement, frozenset({"STMTTRN"})), start=1):
        raw_date = _text(trn, "DTPOSTED")
        posted = _parse_date(raw_date)
        if posted is None:
            errors.append(
                ParseError(
                    f"{source}: transaction {line_no} has an invalid posting date {raw_date!r}",
                    file_name,
                    ERR_TRANSACTION,
                )
            )
            continue
        raw_amount = _text(trn, "TRNAMT")
        amount = _parse_amount(raw_amount)
        if amount is None:
            errors.append(
                ParseError(
                    f"{source}: transaction on {posted:%Y-%m-%d} has an invalid amount "
                    f"{raw_amount!r}",
                    file_name,
                    ERR_TRANSACTION,
                )
            )
            continue

        payee, memo = resolve_payee(_text(trn, "NAME"), _text(trn, "MEMO"))
        external_id = _text(trn, "FITID")
        if payee is None and external_id is None:
            errors.append(
                ParseError(
                    f"Transaction on {posted:%Y-%m-%d} has no payee name (NAME and MEMO fields "
                    "both missing or empty) and no FITID",
                    file_name,
                    ERR_MISSING_IDENTIFIER,
                )
            )
        candidates.append(
            ParsedCandidate(
                date=posted,
                amount=amount,
                payee=payee,
                memo=memo,
                external_id=external_id,
                source=source,
            )
        )


def _parse_text(text: str, file_name: str | None) -> ParseResult:
    root_match = _OFX_ROOT_RE.search(text)
    if root_match is None:
        return ParseResult(
            errors=(
                ParseError(
                    "Failed to parse OFX document: no <OFX> root element found",
                    file_name,
                    ERR_DOCUMENT,
                ),
            )
        )

    tree = _build_tree(text[root_match.start() :])
    ofx = _find(tree, "OFX")
    assert ofx is not None  # the root tag was located above
    fi = _find(ofx, "SONRS", "FI")
    institution = _text(fi, "ORG") if fi is not None else None

    statements = _find_all(ofx, _STATEMENT_TAGS)
    if not statements:
        return ParseResult(
            errors=(
                ParseError(
                    "No statement blocks (STMTRS or CCSTMTRS) found in OFX document",
                    file_name,
                    ERR_STATEMENT,
                ),
            )
        )

    candidates: list[ParsedCandidate] = []
    errors: list[ParseError] = []
    for statement in statements:
        account_type, account_id = _account_label(statement)
        _parse_statement(
            statement,
            source=build_source(institution, account_type, account_id),
            file_name=file_name,
            candidates=candidates,
            errors=errors,
        )
    return ParseResult(candidates=tuple(candidates), errors=tuple(errors))


def parse(
    stream: IO[bytes] | IO[str] | bytes | str | None,
    file_name: str | None = None,
) -> ParseResult:
    """Parse an OFX/QFX statement into candidates and collected errors.

    A ``None`` or empty stream yields an empty, error-free result.
    """

    try:
        raw = _read_raw(stream)
        if not raw:
            return ParseResult()
        text = raw if isinstance(raw, str) else _decode(raw)
        result = _parse_text(text, file_name)
    except Exception as exc:  # noqa: BLE001
        _logger.warning(
            "ofx:parse_failed file=%s error=%s", file_name, exc.__class__.__name__, exc_info=True
        )
        return ParseResult(
            errors=(ParseError(f"Failed to parse OFX document: {exc}", file_name, ERR_DOCUMENT),)
        )

    _logger.info(
        "ofx:parse_done file=%s candidates=%d errors=%d",
        file_name,
        len(result.candidates),
        len(result.errors),
    )
    return result


__all__ = [
    "ERR_DOCUMENT",
    "ERR_MISSING_IDENTIFIER",
    "ERR_STATEMENT",
    "ERR_TRANSACTION",
    "build_source",
    "parse",
    "resolve_payee",
]
