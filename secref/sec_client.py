#!/usr/bin/env python3
"""
SEC EDGAR HTTP client

Fetches quarterly/daily form indexes, the "latest filings" Atom feeds and the
documents of individual filings. Implements the mandatory User-Agent header,
10 requests/second pacing and retry logic per SEC fair-access requirements.
"""

import random
import re
import threading
import time
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from bs4 import BeautifulSoup
from loguru import logger

from secref.config_utils import SecRefConfig
from secref.constants import SEC_ARCHIVES_URL, SEC_BASE_URL, SEC_RSS_URL
from secref.exceptions import SECFetchError, SECRateLimitError
from secref.models import FeedEntry, FormIndexEntry
from secref.parsers import parse_info_table
from secref.rate_limit import backoff_delay
from secref.validators import normalize_cik

ATOM_ACCEPT = "application/atom+xml, application/xml, text/xml"
XML_ACCEPT = "application/xml, text/xml, */*"

TITLE_PATTERN = re.compile(r"^(.+?)\s+-\s+(.+?)\s*\((\d+)\)")
FILED_PATTERN = re.compile(r"Filed:(?:&lt;/b&gt;|</b>)\s*(\d{4}-\d{2}-\d{2})")
ACCESSION_PATTERN = re.compile(r"AccNo:(?:&lt;/b&gt;|</b>)\s*(\d{10}-\d{2}-\d{6})")
SIZE_PATTERN = re.compile(r"Size:(?:&lt;/b&gt;|</b>)\s*([^<&\n]+)")
FORM345_XML_PATTERN = re.compile(r"^(form[345]|primary_doc)\.xml$", re.IGNORECASE)


class SECHTTPClient:
    """
    SEC EDGAR compliant HTTP client for index files, feeds and filing documents.
    Implements mandatory headers, rate limiting, and retry logic per SEC requirements.
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        config: Optional[SecRefConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """
        Initialize SEC HTTP client with compliant headers.

        Args:
            user_agent: Company name and email in format "Company Name email@domain.com"
            config: Timeout, retry and pacing settings
            session: HTTP session (injected in tests)
            sleep: Sleep function used for pacing and backoff
            rand: Random source for backoff jitter
        """
        self.config = config or SecRefConfig()
        user_agent = user_agent or self.config.sec_user_agent
        if not user_agent or "@" not in user_agent:
            raise ValueError("SEC requires a User-Agent with a contact email address")

        self.headers = {
            "User-Agent": user_agent,
            "Accept": "application/json, text/plain, */*",
            "Accept-Encoding": "gzip, deflate",
            "Connection": "keep-alive",
        }
        self.base_url = SEC_BASE_URL
        self.last_request_time = 0.0
        self.min_interval = 1.0 / max(1, self.config.sec_requests_per_second)
        self.session = session or requests.Session()
        self.session.headers.update(self.headers)
        self.sleep = sleep
        self.rand = rand
        self._pace_lock = threading.Lock()

    def _rate_limit(self):
        """Enforce rate limiting: maximum 10 requests per second."""
        with self._pace_lock:
            current_time = time.monotonic()
            time_since_last = current_time - self.last_request_time
            if time_since_last < self.min_interval:
                self.sleep(self.min_interval - time_since_last)
            self.last_request_time = time.monotonic()

    def _exponential_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay for a 0-based attempt."""
        return backoff_delay(
            attempt + 1,
            base=self.config.backoff_base,
            cap=self.config.backoff_cap,
            jitter=self.config.backoff_jitter,
            rand=self.rand,
        )

    def _make_request(
        self,
        url: str,
        params: Optional[Dict] = None,
        accept: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> requests.Response:
        """
        Make HTTP request with rate limiting and retry logic.

        Args:
            url: Target URL
            params: Query parameters
            accept: Accept header override for this request
            max_retries: Maximum number of retry attempts

        Returns:
            requests.Response object (404 responses are returned, not raised)

        Raises:
            SECRateLimitError: If SEC keeps throttling after all retries
            SECFetchError: On other HTTP errors or when all retries fail
        """
        if max_retries is None:
            max_retries = max(0, self.config.max_attempts - 1)
        headers = {"Accept": accept} if accept else None

        for attempt in range(max_retries + 1):
            self._rate_limit()
            logger.debug(f"Making request to {url} (attempt {attempt + 1})")

            retry_after = None
            try:
                response = self.session.get(
                    url, params=params, headers=headers, timeout=self.config.http_timeout
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                error = SECFetchError(f"Request failed: {e}", url=url)
            else:
                status = response.status_code
                throttled = status in (429, 503) or (
                    status == 403 and "Request Rate Threshold Exceeded" in (response.text or "")
                )

                if status == 404:
                    logger.warning(f"Resource not found: {url}")
                    return response
                if status < 400:
                    return response

                if throttled:
                    retry_after = self._retry_after(response)
                    error = SECRateLimitError(f"Rate limited ({status})", retry_after=retry_after, url=url)
                elif status >= 500:
                    error = SECFetchError(f"HTTP {status}", status=status, url=url)
                else:
                    raise SECFetchError(f"HTTP {status} for {url}", status=status, url=url)

            if attempt < max_retries:
                delay = self._exponential_backoff(attempt)
                if retry_after is not None:
                    delay = max(delay, min(retry_after, self.config.backoff_cap))
                logger.warning(
                    f"Request failed (attempt {attempt + 1}): {error}, retrying in {delay:.2f} seconds"
                )
                self.sleep(delay)

        logger.error(f"All retries failed for {url}: {error}")
        raise error

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        try:
            value = (response.headers or {}).get("Retry-After")
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    # Generic fetches

    def fetch_text(self, url: str, accept: Optional[str] = None) -> Optional[str]:
        """Fetch a document as text; None when SEC answers 404."""
        response = self._make_request(url, accept=accept)
        if response.status_code == 404:
            return None
        return response.text

    def fetch_json(self, url: str) -> Optional[Dict]:
        """Fetch a JSON document; None when SEC answers 404."""
        response = self._make_request(url, accept="application/json")
        if response.status_code == 404:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SECFetchError(f"Invalid JSON from {url}: {e}", status=response.status_code, url=url) from e

    # Index files

    def fetch_form_index(self, year: int, quarter: int) -> List[FormIndexEntry]:
        """
        Fetch and parse the quarterly full-index form.idx.

        Args:
            year: Filing year
            quarter: Quarter 1-4

        Returns:
            Index entries; empty when the quarter has no index yet
        """
        url = f"{SEC_ARCHIVES_URL}/full-index/{year}/QTR{quarter}/form.idx"
        text = self.fetch_text(url, accept="text/plain")
        if text is None:
            logger.warning(f"No form index for {year}Q{quarter}")
            return []
        entries = self.parse_form_index(text)
        logger.info(f"Fetched {len(entries)} index entries for {year}Q{quarter}")
        return entries

    def fetch_daily_index(self, day: date) -> List[FormIndexEntry]:
        """Fetch and parse the daily-index form file for one business day."""
        quarter = (day.month - 1) // 3 + 1
        url = f"{SEC_ARCHIVES_URL}/daily-index/{day.year}/QTR{quarter}/form.{day:%Y%m%d}.idx"
        text = self.fetch_text(url, accept="text/plain")
        if text is None:
            logger.info(f"No daily index for {day.isoformat()} (weekend or holiday)")
            return []
        return self.parse_form_index(text)

    @staticmethod
    def parse_form_index(index_text: str) -> List[FormIndexEntry]:
        """
        Parse a form.idx file.

        Data starts after the dashed separator line. Columns are fixed width
        but long company names overflow, so lines are split on runs of two or
        more spaces.
        """
        lines = index_text.splitlines()
        data_start = 0
        for i, line in enumerate(lines):
            if line.startswith("---"):
                data_start = i + 1
                break

        entries = []
        for line in lines[data_start:]:
            line = line.strip()
            if not line:
                continue
            parts = re.split(r"\s{2,}", line)
            if len(parts) >= 5:
                entries.append(
                    FormIndexEntry(
                        form_type=parts[0].strip(),
                        company_name=parts[1].strip(),
                        cik=parts[2].strip(),
                        date_filed=parts[3].strip(),
                        file_name=parts[-1].strip(),
                    )
                )
        return entries

    # Atom feeds

    def build_rss_feed_url(self, form_type: str, count: int = 100) -> str:
        """URL of the EDGAR "latest filings" Atom feed for one form type."""
        params = urlencode(
            {"action": "getcurrent", "type": form_type, "count": count, "owner": "include", "output": "atom"}
        )
        return f"{SEC_RSS_URL}?{params}"

    def fetch_rss_feed(self, form_type: str, count: Optional[int] = None) -> List[FeedEntry]:
        """
        Fetch and parse the Atom feed for a form type.

        Args:
            form_type: e.g. "4", "13F-HR", "SC 13D"
            count: Number of entries requested (SEC caps this at 100)

        Returns:
            Feed entries that carry both an accession number and a CIK
        """
        url = self.build_rss_feed_url(form_type, count or self.config.rss_count)
        text = self.fetch_text(url, accept=ATOM_ACCEPT)
        if text is None:
            return []
        return self.parse_atom_feed(text)

    @staticmethod
    def parse_atom_feed(xml: str) -> List[FeedEntry]:
        """
        Parse an EDGAR Atom feed.

        Titles look like "4 - HANDLER RICHARD B (0001211677) (Reporting)"; the
        summary carries "Filed:", "AccNo:" and "Size:" fields with escaped bold
        tags around the labels.
        """
        soup = BeautifulSoup(xml, "html.parser")
        entries = []

        for entry in soup.find_all("entry"):
            title_tag = entry.find("title")
            title = title_tag.get_text(strip=True) if title_tag else ""
            title_match = TITLE_PATTERN.match(title)
            title_form = title_match.group(1).strip() if title_match else ""
            company_name = title_match.group(2).strip() if title_match else ""
            cik = title_match.group(3) if title_match else ""

            summary_tag = entry.find("summary")
            summary = summary_tag.decode_contents() if summary_tag else ""
            filed = FILED_PATTERN.search(summary)
            accession = ACCESSION_PATTERN.search(summary)
            size = SIZE_PATTERN.search(summary)

            link_tag = entry.find("link")
            updated_tag = entry.find("updated")
            category_tag = entry.find("category")
            updated = updated_tag.get_text(strip=True) if updated_tag else ""
            form_type = (category_tag.get("term") if category_tag else None) or title_form

            if not (accession and cik):
                continue

            entries.append(
                FeedEntry(
                    form_type=form_type,
                    title=title,
                    cik=cik,
                    company_name=company_name,
                    accession_number=accession.group(1),
                    filing_date=filed.group(1) if filed else updated[:10],
                    updated=updated,
                    link=link_tag.get("href", "") if link_tag else "",
                    size=size.group(1).strip() if size else "",
                )
            )
        return entries

    # Filing documents

    @staticmethod
    def get_accession_number(file_name: str) -> str:
        """Accession number from an index path like edgar/data/1234/0001234567-24-000001.txt."""
        return file_name.rsplit("/", 1)[-1].replace(".txt", "")

    def build_filing_url(self, cik: str, accession_number: str, document: Optional[str] = None) -> str:
        """
        Build a URL inside a filing's archive directory.

        Args:
            cik: Filer CIK (leading zeros are dropped)
            accession_number: e.g. "0001752724-25-119791"
            document: File name; defaults to the full submission text file
        """
        directory = accession_number.replace("-", "")
        document = document or f"{accession_number}.txt"
        return f"{SEC_ARCHIVES_URL}/data/{normalize_cik(cik)}/{directory}/{document}"

    def fetch_submission_text(self, cik: str, accession_number: str) -> Optional[str]:
        """Full submission text file (SEC-HEADER plus all documents)."""
        return self.fetch_text(self.build_filing_url(cik, accession_number), accept="text/plain")

    def fetch_filing_index(self, cik: str, accession_number: str) -> List[Dict[str, str]]:
        """
        Files of a filing from its index.json.

        Returns:
            List of {"name", "type"} items; empty when the index is missing
        """
        data = self.fetch_json(self.build_filing_url(cik, accession_number, "index.json"))
        if not data:
            return []
        return list(data.get("directory", {}).get("item", []))

    def fetch_13f_data(self, cik: str, accession_number: str) -> Tuple[str, List[Dict]]:
        """
        Period of report and holdings of a 13F filing.

        The period comes from the primary document; holdings from the
        information table XML. A missing primary document leaves the period
        empty; a failing information table fetch raises.

        Returns:
            Tuple of (period_of_report, holding rows)
        """
        items = self.fetch_filing_index(cik, accession_number)
        if not items:
            return "", []

        period_of_report = ""
        primary = next(
            (
                item for item in items
                if ("primary" in item["name"].lower() or item["name"].lower().startswith("form13f"))
                and item["name"].lower().endswith(".xml")
            ),
            None,
        )
        if primary:
            try:
                xml = self.fetch_text(self.build_filing_url(cik, accession_number, primary["name"]), accept=XML_ACCEPT)
                match = re.search(r"<periodOfReport>([^<]+)</periodOfReport>", xml or "", re.IGNORECASE)
                period_of_report = match.group(1).strip() if match else ""
            except SECFetchError as e:
                logger.warning(f"Could not fetch primary document for {accession_number}: {e}")

        holdings: List[Dict] = []
        info_table = next(
            (
                item for item in items
                if "infotable" in item["name"].lower() and item["name"].lower().endswith(".xml")
            ),
            None,
        )
        if info_table:
            xml = self.fetch_text(
                self.build_filing_url(cik, accession_number, info_table["name"]), accept=XML_ACCEPT
            )
            if xml:
                holdings = parse_info_table(xml, accession_number)

        return period_of_report, holdings

    def fetch_form345_xml(self, cik: str, accession_number: str) -> Optional[str]:
        """
        Ownership XML of a Form 3/4/5 filing.

        Prefers form3/4/5.xml or primary_doc.xml, else any XML that is not an
        information table or index file.
        """
        items = self.fetch_filing_index(cik, accession_number)
        names = [item["name"] for item in items]

        document = next((name for name in names if FORM345_XML_PATTERN.match(name)), None)
        if document is None:
            document = next(
                (
                    name for name in names
                    if name.lower().endswith(".xml")
                    and "infotable" not in name.lower()
                    and "index" not in name.lower()
                ),
                None,
            )
        if document is None:
            logger.warning(f"No ownership XML found in filing {accession_number}")
            return None

        return self.fetch_text(self.build_filing_url(cik, accession_number, document), accept=XML_ACCEPT)
