#!/usr/bin/env python3
"""
Parsers for the SEC filing documents the sync consumes.

- Schedule 13D/13G: SEC-HEADER block of the full submission text, plus
  best-effort extraction of CUSIP, class title, percent of class and shares
  from the HTML body
- 13F: information table XML (default namespace or ns1: prefixed)
- Forms 3/4/5: ownership XML (issuer, reporting owners, non-derivative
  transactions)

Every parser returns plain row dicts keyed by the storage column names.
"""

import re
import xml.etree.ElementTree as ET
from typing import Dict, Iterator, List, Optional

from loguru import logger

from secref.validators import normalize_cik, normalize_cusip

CUSIP_PATTERNS = [
    re.compile(r"\(CUSIP\s*Number\)</[^>]+>[\s\S]{0,500}?([A-Z0-9]{6}[A-Z0-9]{2}[0-9])", re.IGNORECASE),
    re.compile(r"text-align:\s*center[^>]*>[\s]*([A-Z0-9]{6}[A-Z0-9]{2}[0-9])[\s]*<", re.IGNORECASE),
    re.compile(r"CUSIP[:\s]+([A-Z0-9]{6}[A-Z0-9]{2}[0-9])", re.IGNORECASE),
    re.compile(r">([A-Z][0-9]{5}[A-Z0-9]{2}[0-9])<"),
]
CUSIP_SHAPE = re.compile(r"^[A-Z0-9]{6}[A-Z0-9]{2}[0-9]$")

CLASS_TITLE_PATTERNS = [
    re.compile(r"Title of Class of Securities[^>]*>[\s\S]*?<[^>]+>([^<]+)<", re.IGNORECASE),
    re.compile(r"\(Title of Class[^)]*\)[\s\S]*?([A-Za-z][^<\n]{5,50})", re.IGNORECASE),
    re.compile(r"Class of Securities[:\s]*([A-Za-z][^\n<]{5,50})", re.IGNORECASE),
]

PERCENT_PATTERNS = [
    re.compile(r"Percent of Class[^:]*:\s*([\d.]+)\s*%", re.IGNORECASE),
    re.compile(r"Item\s*(?:11|9)[^%]*?([\d.]+)\s*%", re.IGNORECASE),
    re.compile(r"Aggregate Amount[^%]*?([\d.]+)\s*%", re.IGNORECASE),
]

SHARES_PATTERNS = [
    re.compile(r"Aggregate Amount[^:]*:\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"Total Shares[^:]*:\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"Number of Shares[^:]*:\s*([\d,]+)", re.IGNORECASE),
]

HEADER_LINE = re.compile(r"^([A-Z][A-Z\s]+?):\s*(.*)$")


# Schedule 13D/13G

def parse_sec_header(submission_text: str) -> Dict[str, str]:
    """
    Key/value pairs of the <SEC-HEADER> block.

    Keys under "SUBJECT COMPANY:" are prefixed SUBJECT_, keys under
    "FILED BY:" are prefixed FILEDBY_.
    """
    match = re.search(r"<SEC-HEADER>([\s\S]*?)</SEC-HEADER>", submission_text)
    if not match:
        return {}

    data: Dict[str, str] = {}
    prefix = ""
    for line in match.group(1).splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        if trimmed == "SUBJECT COMPANY:":
            prefix = "SUBJECT_"
            continue
        if trimmed == "FILED BY:":
            prefix = "FILEDBY_"
            continue

        kv = HEADER_LINE.match(trimmed)
        if kv:
            data[f"{prefix}{kv.group(1).strip()}"] = kv.group(2).strip()
    return data


def extract_cusip(html: str) -> Optional[str]:
    for pattern in CUSIP_PATTERNS:
        match = pattern.search(html)
        if match:
            cusip = match.group(1).upper()
            if CUSIP_SHAPE.match(cusip):
                return cusip
    return None


def extract_class_title(html: str) -> Optional[str]:
    for pattern in CLASS_TITLE_PATTERNS:
        match = pattern.search(html)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def extract_percent_of_class(html: str) -> Optional[float]:
    for pattern in PERCENT_PATTERNS:
        match = pattern.search(html)
        if not match:
            continue
        try:
            percent = float(match.group(1))
        except ValueError:
            continue
        if 0 <= percent <= 100:
            return percent
    return None


def extract_shares_owned(html: str) -> Optional[float]:
    for pattern in SHARES_PATTERNS:
        match = pattern.search(html)
        if not match:
            continue
        digits = match.group(1).replace(",", "")
        if digits.isdigit() and int(digits) > 0:
            return float(digits)
    return None


def parse_schedule13_header(submission_text: str, accession_number: str) -> Optional[Dict]:
    """
    Parse a Schedule 13D/13G full submission text file.

    Args:
        submission_text: Contents of {accession}.txt
        accession_number: Accession number of the filing

    Returns:
        Header data dict, or None when the text is not a Schedule 13 filing
        or has no filing date
    """
    header = parse_sec_header(submission_text)

    form_type = header.get("CONFORMED SUBMISSION TYPE", "")
    if "13" not in form_type:
        return None

    filed = header.get("FILED AS OF DATE")
    if not filed:
        return None
    filing_date = f"{filed[:4]}-{filed[4:6]}-{filed[6:8]}" if len(filed) == 8 else filed

    html_start = submission_text.find("<HTML>")
    html = submission_text[html_start:] if html_start > -1 else submission_text

    return {
        "accession_number": accession_number,
        "form_type": form_type,
        "filing_date": filing_date,
        "issuer_cik": header.get("SUBJECT_CENTRAL INDEX KEY", ""),
        "issuer_name": header.get("SUBJECT_COMPANY CONFORMED NAME") or "Unknown Issuer",
        "issuer_sic": header.get("SUBJECT_STANDARD INDUSTRIAL CLASSIFICATION"),
        "filed_by_cik": header.get("FILEDBY_CENTRAL INDEX KEY", ""),
        "filed_by_name": header.get("FILEDBY_COMPANY CONFORMED NAME") or "Unknown Filer",
        "cusip": extract_cusip(html),
        "securities_class_title": extract_class_title(html),
        "percent_of_class": extract_percent_of_class(html),
        "shares_owned": extract_shares_owned(html),
    }


def header_to_filing_record(data: Dict) -> Dict:
    """Flatten parsed header data into a filings_13dg row."""
    return {
        "accession_number": data["accession_number"],
        "form_type": data["form_type"],
        "filing_date": data["filing_date"],
        "issuer_cik": normalize_cik(data["issuer_cik"]) if data.get("issuer_cik") else None,
        "issuer_name": data.get("issuer_name"),
        "issuer_sic": data.get("issuer_sic") or None,
        "issuer_cusip": data.get("cusip") or None,
        "filed_by_cik": normalize_cik(data["filed_by_cik"]) if data.get("filed_by_cik") else None,
        "filed_by_name": data.get("filed_by_name"),
        "securities_class_title": data.get("securities_class_title") or None,
        "percent_of_class": data.get("percent_of_class") or 0.0,
        "shares_owned": data.get("shares_owned") or 0.0,
    }


# XML helpers

def _parse_xml(xml: str) -> ET.Element:
    try:
        return ET.fromstring(xml.strip())
    except ET.ParseError as e:
        raise ValueError(f"Malformed XML: {e}") from e


def _local(tag) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _iter_local(element: ET.Element, name: str) -> Iterator[ET.Element]:
    """Descendants whose tag (namespace stripped) equals name, case-insensitively."""
    name = name.lower()
    for child in element.iter():
        if child is not element and _local(child.tag).lower() == name:
            yield child


def get_text_safe(element: Optional[ET.Element], name: str, default: str = "") -> str:
    """
    Text of the first descendant named ``name``.

    Ownership XML wraps most values in a <value> child; all nested text is joined.
    """
    if element is None:
        return default
    for child in _iter_local(element, name):
        text = "".join(child.itertext()).strip()
        if text:
            return text
    return default


def get_number_safe(element: Optional[ET.Element], name: str) -> float:
    text = get_text_safe(element, name).replace(",", "")
    try:
        return float(text) if text else 0.0
    except ValueError:
        return 0.0


# 13F information table

def parse_info_table(xml: str, accession_number: str) -> List[Dict]:
    """
    Holdings rows from a 13F information table.

    Args:
        xml: Information table XML
        accession_number: Accession number of the filing

    Returns:
        holdings_13f rows, numbered from 1 in document order
    """
    root = _parse_xml(xml)
    entries = [root] if _local(root.tag).lower() == "infotable" else list(_iter_local(root, "infoTable"))

    holdings = []
    for row_number, entry in enumerate(entries, start=1):
        cusip = get_text_safe(entry, "cusip")
        voting = next(_iter_local(entry, "votingAuthority"), None)
        holdings.append(
            {
                "accession_number": accession_number,
                "row_number": row_number,
                "cusip": normalize_cusip(cusip) if cusip else None,
                "name_of_issuer": get_text_safe(entry, "nameOfIssuer"),
                "title_of_class": get_text_safe(entry, "titleOfClass"),
                "value": get_number_safe(entry, "value"),
                "shares": get_number_safe(entry, "sshPrnamt") or get_number_safe(entry, "shrsOrPrnAmt"),
                "shares_type": get_text_safe(entry, "sshPrnamtType") or "SH",
                "put_call": get_text_safe(entry, "putCall") or None,
                "investment_discretion": get_text_safe(entry, "investmentDiscretion"),
                "voting_auth_sole": get_number_safe(voting, "Sole"),
                "voting_auth_shared": get_number_safe(voting, "Shared"),
                "voting_auth_none": get_number_safe(voting, "None"),
            }
        )

    logger.debug(f"Parsed {len(holdings)} holdings for {accession_number}")
    return holdings


# Forms 3/4/5

def _owner_relationship(owner: ET.Element) -> str:
    flags = [
        ("isDirector", "Director"),
        ("isOfficer", "Officer"),
        ("isTenPercentOwner", "10% Owner"),
        ("isOther", "Other"),
    ]
    return ", ".join(
        label for tag, label in flags if get_text_safe(owner, tag).lower() in ("1", "true")
    )


def parse_form345_xml(xml: str, accession_number: str, filing_date: str) -> Optional[Dict[str, object]]:
    """
    Parse a Form 3/4/5 ownership document.

    Args:
        xml: Ownership XML
        accession_number: Accession number of the filing
        filing_date: Filing date (YYYY-MM-DD) from the feed or index

    Returns:
        {"submission": row, "owners": [rows], "transactions": [rows]}, or None
        when the document names no issuer CIK
    """
    root = _parse_xml(xml)
    issuer = next(_iter_local(root, "issuer"), root)

    issuer_cik = get_text_safe(issuer, "issuerCik")
    if not issuer_cik:
        return None

    submission = {
        "accession_number": accession_number,
        "filing_date": filing_date,
        "period_of_report": get_text_safe(root, "periodOfReport") or None,
        "document_type": get_text_safe(root, "documentType") or None,
        "issuer_cik": normalize_cik(issuer_cik),
        "issuer_name": get_text_safe(issuer, "issuerName") or None,
        "issuer_trading_symbol": get_text_safe(issuer, "issuerTradingSymbol") or None,
        "no_securities_owned": get_text_safe(root, "noSecuritiesOwned") or "0",
        "not_subject_sec16": get_text_safe(root, "notSubjectToSection16") or "0",
        "remarks": get_text_safe(root, "remarks") or None,
    }

    owners: Dict[str, Dict] = {}
    for owner in _iter_local(root, "reportingOwner"):
        owner_cik = get_text_safe(owner, "rptOwnerCik")
        if not owner_cik:
            logger.debug(f"Skipping reporting owner without CIK in {accession_number}")
            continue
        owner_cik = normalize_cik(owner_cik)
        owners.setdefault(
            owner_cik,
            {
                "accession_number": accession_number,
                "owner_cik": owner_cik,
                "owner_name": get_text_safe(owner, "rptOwnerName") or None,
                "owner_relationship": _owner_relationship(owner) or None,
                "officer_title": get_text_safe(owner, "officerTitle") or None,
                "street1": get_text_safe(owner, "rptOwnerStreet1") or None,
                "city": get_text_safe(owner, "rptOwnerCity") or None,
                "state": get_text_safe(owner, "rptOwnerState") or None,
                "zip_code": get_text_safe(owner, "rptOwnerZipCode") or None,
            },
        )

    transactions = []
    for trans_sk, trans in enumerate(_iter_local(root, "nonDerivativeTransaction"), start=1):
        transactions.append(
            {
                "accession_number": accession_number,
                "trans_sk": trans_sk,
                "security_title": get_text_safe(trans, "securityTitle") or None,
                "trans_date": get_text_safe(trans, "transactionDate") or None,
                "trans_code": get_text_safe(trans, "transactionCode") or None,
                "trans_shares": get_number_safe(trans, "transactionShares"),
                "trans_price_per_share": get_number_safe(trans, "transactionPricePerShare"),
                "trans_acquired_disp_cd": get_text_safe(trans, "transactionAcquiredDisposedCode") or None,
                "shares_owned_following": get_number_safe(trans, "sharesOwnedFollowingTransaction"),
                "direct_indirect_ownership": get_text_safe(trans, "directOrIndirectOwnership") or None,
            }
        )

    return {"submission": submission, "owners": list(owners.values()), "transactions": transactions}
