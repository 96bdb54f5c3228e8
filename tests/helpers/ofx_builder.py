"""Build small OFX statement documents for tests.

``build_ofx`` renders OFX 1.x SGML (unclosed leaf elements, KEY:VALUE
header) by default, or OFX 2.x XML with ``xml=True``. Transaction fields set
to ``None`` are omitted from the output so tests can exercise missing-field
paths.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

_SGML_HEADER = (
    "OFXHEADER:100\n"
    "DATA:OFXSGML\n"
    "VERSION:102\n"
    "SECURITY:NONE\n"
    "ENCODING:USASCII\n"
    "CHARSET:{charset}\n"
    "COMPRESSION:NONE\n"
    "OLDFILEUID:NONE\n"
    "NEWFILEUID:NONE\n"
    "\n"
)

_XML_HEADER = (
    '<?xml version="1.0" encoding="UTF-8" standalone="no"?>\n'
    '<?OFX OFXHEADER="200" VERSION="220" SECURITY="NONE" OLDFILEUID="NONE" NEWFILEUID="NONE"?>\n'
)


@dataclass(slots=True)
class Txn:
    fitid: str | None = "TXN001"
    posted: str | None = "20231115120000[-5:EST]"
    amount: str | None = "-50.00"
    name: str | None = "Test Payee"
    memo: str | None = None
    trntype: str = "DEBIT"


@dataclass(slots=True)
class Statement:
    acct_id: str | None = "1234"
    acct_type: str = "CHECKING"
    credit_card: bool = False
    transactions: list[Txn] = field(default_factory=lambda: [Txn()])


def _leaf(tag: str, value: Any, *, xml: bool) -> str:
    if value is None:
        return ""
    return f"<{tag}>{value}</{tag}>\n" if xml else f"<{tag}>{value}\n"


def _txn(t: Txn, *, xml: bool) -> str:
    return (
        "<STMTTRN>\n"
        + _leaf("TRNTYPE", t.trntype, xml=xml)
        + _leaf("DTPOSTED", t.posted, xml=xml)
        + _leaf("TRNAMT", t.amount, xml=xml)
        + _leaf("FITID", t.fitid, xml=xml)
        + _leaf("NAME", t.name, xml=xml)
        + _leaf("MEMO", t.memo, xml=xml)
        + "</STMTTRN>\n"
    )


def _statement(s: Statement, uid: int, *, xml: bool) -> str:
    lines = "".join(_txn(t, xml=xml) for t in s.transactions)
    if s.credit_card:
        rs_tag, msgs_tag, trnrs_tag = "CCSTMTRS", "CREDITCARDMSGSRSV1", "CCSTMTTRNRS"
        acct = "<CCACCTFROM>\n" + _leaf("ACCTID", s.acct_id, xml=xml) + "</CCACCTFROM>\n"
    else:
        rs_tag, msgs_tag, trnrs_tag = "STMTRS", "BANKMSGSRSV1", "STMTTRNRS"
        acct = (
            "<BANKACCTFROM>\n"
            + _leaf("BANKID", "123456789", xml=xml)
            + _leaf("ACCTID", s.acct_id, xml=xml)
            + _leaf("ACCTTYPE", s.acct_type, xml=xml)
            + "</BANKACCTFROM>\n"
        )
    return (
        f"<{msgs_tag}>\n<{trnrs_tag}>\n"
        + _leaf("TRNUID", uid, xml=xml)
        + "<STATUS>\n"
        + _leaf("CODE", 0, xml=xml)
        + _leaf("SEVERITY", "INFO", xml=xml)
        + "</STATUS>\n"
        + f"<{rs_tag}>\n"
        + _leaf("CURDEF", "USD", xml=xml)
        + acct
        + "<BANKTRANLIST>\n"
        + _leaf("DTSTART", "20231101", xml=xml)
        + _leaf("DTEND", "20231130", xml=xml)
        + lines
        + "</BANKTRANLIST>\n"
        + "<LEDGERBAL>\n"
        + _leaf("BALAMT", "1000.00", xml=xml)
        + _leaf("DTASOF", "20231130", xml=xml)
        + "</LEDGERBAL>\n"
        + f"</{rs_tag}>\n</{trnrs_tag}>\n</{msgs_tag}>\n"
    )


def build_ofx(
    statements: Iterable[Statement] | None = None,
    *,
    org: str | None = "Test Bank",
    xml: bool = False,
    charset: str = "1252",
    encoding: str = "cp1252",
) -> bytes:
    """Render a statement document as bytes."""

    stmts = list(statements) if statements is not None else [Statement()]
    fi = ""
    if org:
        fi = "<FI>\n" + _leaf("ORG", org, xml=xml) + _leaf("FID", "1234", xml=xml) + "</FI>\n"
    signon = (
        "<SIGNONMSGSRSV1>\n<SONRS>\n<STATUS>\n"
        + _leaf("CODE", 0, xml=xml)
        + _leaf("SEVERITY", "INFO", xml=xml)
        + "</STATUS>\n"
        + _leaf("DTSERVER", "20231116120000", xml=xml)
        + _leaf("LANGUAGE", "ENG", xml=xml)
        + fi
        + "</SONRS>\n</SIGNONMSGSRSV1>\n"
    )
    body = (
        "<OFX>\n"
        + signon
        + "".join(_statement(s, i + 1, xml=xml) for i, s in enumerate(stmts))
        + "</OFX>\n"
    )
    header = _XML_HEADER if xml else _SGML_HEADER.format(charset=charset)
    return (header + body).encode("utf-8" if xml else encoding)


__all__ = ["Statement", "Txn", "build_ofx"]
