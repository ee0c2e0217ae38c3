#!/usr/bin/env python3
"""
OpenFIGI API Client for CUSIP resolution

This module provides a Bloomberg OpenFIGI API client that resolves CUSIP
identifiers to FIGI/ticker/name listings in batches. Every request passes
through the process-wide sliding-window rate limiter and concurrency gate,
results (successes and failures) are written to the mapping cache, and a
failing batch degrades to per-identifier transient failures instead of
raising.
"""

import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pandas as pd
import requests
from loguru import logger
from tqdm import tqdm

from secref.config_utils import SecRefConfig
from secref.constants import (
    OPENFIGI_MAPPING_URL,
    OPENFIGI_RATE_LIMIT_NO_KEY,
    OPENFIGI_RATE_LIMIT_WITH_KEY,
)
from secref.exceptions import MappingServiceError, PayloadTooLargeError, RateLimitTimeoutError
from secref.mapping_cache import MappingCache
from secref.models import (
    PERMANENT,
    TRANSIENT,
    MappingFailure,
    MappingResult,
    MappingSuccess,
    make_failure,
    utcnow,
)
from secref.rate_limit import ConcurrencyGate, SlidingWindowRateLimiter, backoff_delay, get_shared_limits
from secref.validators import validate_cusip, validate_isin

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def select_best_match(candidates: List[dict]) -> dict:
    """
    Pick one listing among several OpenFIGI candidates.

    Priority: US composite exchange, then Equity market sector, then Common
    Stock security type, then the first candidate. Candidates that tie keep
    the order the service returned them in.
    """
    preferences = (
        lambda c: c.get("exchCode") == "US",
        lambda c: c.get("marketSector") == "Equity",
        lambda c: c.get("securityType") == "Common Stock",
    )
    for prefers in preferences:
        for candidate in candidates:
            if prefers(candidate):
                return candidate
    return candidates[0]


def _retry_after_seconds(response) -> Optional[float]:
    headers = getattr(response, "headers", None) or {}
    try:
        value = headers.get("Retry-After")
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class OpenFIGIClient:
    """
    OpenFIGI API client for mapping CUSIP identifiers to listings.
    Implements batching, shared rate limiting, retries and caching per
    OpenFIGI API requirements.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        cache: Optional[MappingCache] = None,
        config: Optional[SecRefConfig] = None,
        session: Optional[requests.Session] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        gate: Optional[ConcurrencyGate] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize OpenFIGI API client.

        Args:
            api_key: Optional API key for higher rate limits
            cache: Mapping cache; a memory-only cache is used when None
            config: Batch size, retry and timeout settings
            session: HTTP session (injected in tests)
            limiter: Rate limiter; defaults to the process-wide one for this quota
            gate: Concurrency gate; defaults to the process-wide one
            sleep: Sleep function used for retry backoff
            rand: Random source for backoff jitter
            clock: Returns the current aware UTC datetime
        """
        if config is None:
            key = api_key
            config = SecRefConfig(
                openfigi_api_key=key,
                openfigi_requests_per_minute=(
                    OPENFIGI_RATE_LIMIT_WITH_KEY if key else OPENFIGI_RATE_LIMIT_NO_KEY
                ),
            )
        self.config = config
        self.api_key = api_key if api_key is not None else config.openfigi_api_key
        self.mapping_url = OPENFIGI_MAPPING_URL

        self.cache = cache if cache is not None else MappingCache()

        if limiter is None or gate is None:
            shared_limiter, shared_gate = get_shared_limits(
                config.openfigi_requests_per_minute, config.mapping_concurrency
            )
            limiter = limiter or shared_limiter
            gate = gate or shared_gate
        self.limiter = limiter
        self.gate = gate

        self.sleep = sleep
        self.rand = rand
        self.clock = clock

        # Setup session with proper headers
        self.session = session or requests.Session()
        self._setup_headers()

        self.request_count = 0
        self._count_lock = threading.Lock()

    def _setup_headers(self):
        """Setup HTTP headers for OpenFIGI API requests."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        # Add API key if provided
        if self.api_key:
            headers["X-OPENFIGI-APIKEY"] = self.api_key

        self.session.headers.update(headers)

    def resolve(self, cusips: List[str]) -> List[MappingResult]:
        """
        Resolve CUSIPs to listings, one result per input in input order.

        Invalid CUSIPs yield a permanent failure without a request and are not
        cached. Duplicates are resolved once. Fresh cache entries skip the
        service entirely.

        Args:
            cusips: Raw CUSIP strings (6, 8 or 9 characters)

        Returns:
            List of MappingSuccess / MappingFailure, aligned with ``cusips``
        """
        now = self.clock()
        keys: List[Optional[str]] = []
        invalid: Dict[int, MappingFailure] = {}
        resolved: Dict[str, MappingResult] = {}
        misses: List[str] = []

        for index, raw in enumerate(cusips):
            validation = validate_cusip(raw)
            if not validation.valid:
                invalid[index] = make_failure(raw.strip().upper(), validation.error, now, PERMANENT)
                keys.append(None)
                continue

            cusip = validation.normalized
            keys.append(cusip)
            if cusip in resolved or cusip in misses:
                continue

            cached = self.cache.get(cusip)
            if cached is not None:
                resolved[cusip] = cached
            else:
                misses.append(cusip)

        if misses:
            logger.info(
                f"Resolving {len(misses)} CUSIPs via OpenFIGI "
                f"({len(resolved)} served from cache)"
            )
            resolved.update(self._resolve_misses(misses))

        return [
            invalid[index] if key is None else resolved[key]
            for index, key in enumerate(keys)
        ]

    def _resolve_misses(self, misses: List[str]) -> Dict[str, MappingResult]:
        size = max(1, self.config.mapping_batch_size)
        batches = [misses[i:i + size] for i in range(0, len(misses), size)]
        results: Dict[str, MappingResult] = {}

        if len(batches) == 1:
            results.update(self._resolve_batch(batches[0]))
            return results

        with ThreadPoolExecutor(max_workers=self.gate.limit) as executor:
            futures = [executor.submit(self._resolve_batch, batch) for batch in batches]
            for future in tqdm(
                as_completed(futures), desc="Resolving CUSIP batches", total=len(futures), leave=False
            ):
                results.update(future.result())
        return results

    def _resolve_batch(self, batch: List[str]) -> Dict[str, MappingResult]:
        """Fetch one batch and write its outcomes to the cache. Never raises for service errors."""
        try:
            items = self._fetch_batch(batch)
        except PayloadTooLargeError as e:
            logger.error(
                f"OpenFIGI rejected a batch of {len(batch)} identifiers as too large (HTTP 413). "
                f"Lower the mapping batch size. {e}"
            )
            entries = [make_failure(cusip, str(e), self.clock(), TRANSIENT) for cusip in batch]
        except (MappingServiceError, RateLimitTimeoutError) as e:
            logger.warning(f"OpenFIGI batch of {len(batch)} failed: {e}")
            entries = [make_failure(cusip, str(e), self.clock(), TRANSIENT) for cusip in batch]
        else:
            entries = self._parse_batch_response(batch, items)

        self.cache.put_many(entries)
        return {entry.cusip: entry for entry in entries}

    def _fetch_batch(self, batch: List[str]) -> List[dict]:
        """
        POST one mapping batch with rate limiting and retry logic.

        Args:
            batch: Normalized CUSIPs

        Returns:
            Parsed JSON response (parallel array of {data}/{error}/{warning} objects)

        Raises:
            PayloadTooLargeError: On HTTP 413 (never retried)
            MappingServiceError: On non-retryable errors or when retries are exhausted
            RateLimitTimeoutError: If a rate limiter slot cannot be had in time
        """
        payload = [{"idType": "ID_CUSIP", "idValue": cusip} for cusip in batch]
        max_attempts = max(1, self.config.max_attempts)
        last_error: Optional[MappingServiceError] = None

        for attempt in range(1, max_attempts + 1):
            self.limiter.acquire()
            retry_after = None

            with self.gate:
                with self._count_lock:
                    self.request_count += 1
                if attempt == 1:
                    logger.debug(f"Making request to {self.mapping_url} ({len(batch)} identifiers)")
                else:
                    logger.debug(f"Making request to {self.mapping_url} (attempt {attempt})")
                try:
                    response = self.session.post(
                        self.mapping_url, json=payload, timeout=self.config.http_timeout
                    )
                except (requests.Timeout, requests.ConnectionError) as e:
                    response = None
                    last_error = MappingServiceError(f"Request failed: {e}")
                except requests.RequestException as e:
                    raise MappingServiceError(f"Request failed: {e}", retryable=False) from e

            if response is not None:
                status = response.status_code
                if status == 200:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise MappingServiceError(f"Malformed response: {e}", status) from e
                    if not isinstance(data, list):
                        raise MappingServiceError("Malformed response: expected a JSON array", status)
                    return data
                if status == 413:
                    raise PayloadTooLargeError(f"HTTP 413 for batch of {len(batch)}")
                if status not in RETRYABLE_STATUS:
                    raise MappingServiceError(
                        f"HTTP error {status}: {response.text[:200]}", status, retryable=False
                    )
                last_error = MappingServiceError(f"HTTP error {status}", status)
                retry_after = _retry_after_seconds(response) if status == 429 else None

            if attempt < max_attempts:
                delay = backoff_delay(
                    attempt,
                    base=self.config.backoff_base,
                    cap=self.config.backoff_cap,
                    jitter=self.config.backoff_jitter,
                    rand=self.rand,
                )
                if retry_after is not None:
                    delay = max(delay, min(retry_after, self.config.backoff_cap))
                logger.warning(
                    f"OpenFIGI request failed (attempt {attempt}/{max_attempts}): "
                    f"{last_error}, retrying in {delay:.2f} seconds"
                )
                self.sleep(delay)

        logger.error(f"All retries failed for OpenFIGI batch of {len(batch)}: {last_error}")
        raise last_error

    def _parse_batch_response(self, batch: List[str], items: List[dict]) -> List[MappingResult]:
        now = self.clock()
        if len(items) != len(batch):
            logger.warning(
                f"OpenFIGI returned {len(items)} results for {len(batch)} identifiers"
            )

        entries: List[MappingResult] = []
        for index, cusip in enumerate(batch):
            item = items[index] if index < len(items) else None

            if not isinstance(item, dict):
                entries.append(make_failure(cusip, "Malformed response", now, TRANSIENT))
            elif item.get("error"):
                entries.append(make_failure(cusip, str(item["error"]), now))
            elif item.get("data"):
                best = select_best_match(item["data"])
                entries.append(
                    MappingSuccess(
                        cusip=cusip,
                        figi=best.get("figi"),
                        ticker=best.get("ticker"),
                        name=best.get("name"),
                        exchange_code=best.get("exchCode"),
                        security_type=best.get("securityType") or best.get("securityType2"),
                        market_sector=best.get("marketSector"),
                        cached_at=now,
                    )
                )
                logger.debug(f"Found ticker {best.get('ticker')} for CUSIP {cusip}")
            else:
                # empty data or a {"warning": "No identifier found."} item
                entries.append(
                    make_failure(cusip, item.get("warning") or "No mapping found", now, PERMANENT)
                )
        return entries

    def resolve_isins(self, isins: List[str]) -> List[MappingResult]:
        """
        Resolve ISINs through their embedded CUSIP.

        Only US ISINs embed a CUSIP; anything else gets an uncached permanent failure.
        """
        now = self.clock()
        cusips: List[Optional[str]] = []
        for isin in isins:
            validation = validate_isin(isin)
            cusips.append(validation.metadata.get("cusip") if validation.valid else None)

        resolved = iter(self.resolve([c for c in cusips if c is not None]))
        results: List[MappingResult] = []
        for isin, cusip in zip(isins, cusips):
            if cusip is None:
                results.append(
                    make_failure(isin.strip().upper(), f"Unsupported ISIN: {isin}", now, PERMANENT)
                )
            else:
                results.append(next(resolved))
        return results

    def get_ticker_from_cusip(self, cusip: str) -> Optional[str]:
        """
        Get ticker symbol from CUSIP identifier.

        Args:
            cusip: 9-character CUSIP identifier

        Returns:
            Ticker symbol if found, None otherwise
        """
        result = self.resolve([cusip])[0]
        return result.ticker if isinstance(result, MappingSuccess) else None

    def get_multiple_tickers_from_cusips(self, cusips: List[str]) -> Dict[str, Optional[str]]:
        """
        Get ticker symbols for multiple CUSIP identifiers.

        Args:
            cusips: List of CUSIP identifiers

        Returns:
            Dictionary mapping CUSIP to ticker symbol (or None if not found)
        """
        results = self.resolve(cusips)
        return {
            cusip: result.ticker if isinstance(result, MappingSuccess) else None
            for cusip, result in zip(cusips, results)
        }

    def add_tickers_to_dataframe_by_cusip(
        self, df: pd.DataFrame, cusip_column: str = "cusip"
    ) -> pd.DataFrame:
        """
        Add ticker symbols to a pandas DataFrame containing CUSIP identifiers.

        Args:
            df: DataFrame with CUSIP column
            cusip_column: Name of the column containing CUSIP identifiers

        Returns:
            DataFrame with added 'ticker' column
        """
        # Create a copy to avoid SettingWithCopyWarning
        df = df.copy()

        if cusip_column not in df.columns:
            logger.warning(f"Column '{cusip_column}' not found in DataFrame")
            df["ticker"] = None
            return df

        logger.info(f"Adding ticker symbols by CUSIP for {len(df)} holdings...")

        # Unique string CUSIPs only; NaN and numeric junk are skipped
        unique_cusips = [cusip for cusip in df[cusip_column].dropna().unique() if isinstance(cusip, str)]
        logger.info(f"Found {len(unique_cusips)} unique CUSIPs")

        ticker_mappings = self.get_multiple_tickers_from_cusips(unique_cusips)
        df["ticker"] = df[cusip_column].map(ticker_mappings)

        found_tickers = int(df["ticker"].notna().sum())
        success_rate = found_tickers / len(df) * 100 if len(df) else 0.0
        logger.info(f"Found tickers for {found_tickers}/{len(df)} holdings ({success_rate:.1f}%)")

        missing = df[df["ticker"].isna()][cusip_column].dropna().unique()
        if len(missing):
            logger.warning(f"Could not find tickers for {len(missing)} CUSIPs: {list(missing)[:20]}")

        return df

    def clear_expired_errors(self) -> int:
        """Remove cached failures whose retry window has elapsed."""
        return self.cache.clear_expired_errors()

    def get_cache_stats(self) -> Dict[str, int]:
        """Get cache statistics."""
        return self.cache.stats()
