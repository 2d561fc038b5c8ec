#!/usr/bin/env python3
"""Monitor company, product and domain mentions in Gemini answers."""

from __future__ import annotations

import argparse
import csv
import json
import os
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

from dotenv import load_dotenv

DEFAULT_ENV_FILE = ".env"
DEFAULT_OUTPUT_DIR = "."
REQUEST_TIMEOUT_SECONDS = 60.0
INTER_REQUEST_DELAY_SECONDS = 1.0
READ_CHUNK_BYTES = 16384
NO_PRODUCTS = "none"
OUTPUT_FILENAME_TEMPLATE = "llmo_monitoring_{day}.csv"
CSV_FIELDS = [
    "query",
    "timestamp",
    "company_mentioned",
    "products_mentioned",
    "url_mentioned",
    "full_response",
]
GEMINI_GENERATE_CONTENT_API_ROOT = (
    "https://generativelanguage.googleapis.com/v1beta/models"
)
ENV_API_KEY = "GEMINI_API_KEY"
ENV_MODEL = "GEMINI_API_MODEL"
ENV_DOMAIN = "DOMAIN_NAME"
ENV_COMPANY = "COMPANY_NAME"
ENV_PRODUCTS = "PRODUCT_NAMES"
ENV_QUERIES = "TARGET_QUERIES"
PRODUCT_SEPARATOR = ","
QUERY_SEPARATOR = "|"
# Gemini part payload keys other than "text".
NON_TEXT_SEGMENT_KINDS = (
    "inlineData",
    "fileData",
    "functionCall",
    "functionResponse",
    "executableCode",
    "codeExecutionResult",
)


class ConfigError(RuntimeError):
    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__(
            "Missing required environment variables: " + ", ".join(self.missing)
        )


class ClientSetupError(RuntimeError):
    """Raised when the Gemini client cannot be built."""


class AskError(RuntimeError):
    """Base class for per-query failures. These never abort a run."""


class TransportError(AskError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(AskError):
    """Raised when a response carries no usable text answer."""


class UnsupportedSegmentKind(MalformedResponseError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"First content part is not text (kind: {kind}).")
        self.kind = kind


@dataclass(frozen=True)
class MonitorConfig:
    api_key: str
    model: str
    domain_name: str
    company_name: str
    product_names: Tuple[str, ...]
    queries: Tuple[str, ...]


@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class OtherSegment:
    kind: str
    payload: Any = None


Segment = Union[TextSegment, OtherSegment]


@dataclass(frozen=True)
class Mentions:
    company_mentioned: bool
    matched_products: Tuple[str, ...]
    url_mentioned: bool


@dataclass(frozen=True)
class QueryResult:
    query: str
    timestamp: str
    company_mentioned: bool
    products_mentioned: str
    url_mentioned: bool
    full_response: str

    def to_csv_row(self) -> Dict[str, str]:
        return {
            "query": self.query,
            "timestamp": self.timestamp,
            "company_mentioned": format_bool(self.company_mentioned),
            "products_mentioned": self.products_mentioned,
            "url_mentioned": format_bool(self.url_mentioned),
            "full_response": self.full_response,
        }


@dataclass
class RunReport:
    total: int = 0
    results: List[QueryResult] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)


class GeminiRestClient:
    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def generate_content(
        self,
        *,
        model: str,
        prompt: str,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> Dict[str, Any]:
        model_path = urllib.parse.quote(model, safe="")
        endpoint = (
            f"{GEMINI_GENERATE_CONTENT_API_ROOT}/{model_path}:generateContent"
            f"?key={urllib.parse.quote(self.api_key, safe='')}"
        )
        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        request = urllib.request.Request(
            endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        deadline = time.monotonic() + timeout
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                raw = read_before_deadline(response, deadline).decode(
                    "utf-8", errors="replace"
                )
        except urllib.error.HTTPError as exc:
            status_code = int(getattr(exc, "code", 0) or 0)
            raw_error = ""
            try:
                raw_error = exc.read().decode("utf-8")
            except Exception:  # noqa: BLE001
                raw_error = ""
            message = f"Gemini request failed ({status_code})."
            try:
                parsed = json.loads(raw_error) if raw_error else {}
                if isinstance(parsed, dict):
                    candidate_message = parsed.get("error", {}).get("message")
                    if isinstance(candidate_message, str) and candidate_message.strip():
                        message = candidate_message.strip()
            except json.JSONDecodeError:
                pass
            raise TransportError(message, status_code=status_code) from exc
        except OSError as exc:
            # URLError, socket timeouts and connection resets all land here.
            raise TransportError(f"Gemini request failed: {exc}") from exc

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError("Gemini returned invalid JSON.") from exc
        if not isinstance(parsed, dict):
            raise MalformedResponseError("Gemini returned a non-object JSON body.")
        return parsed


def read_before_deadline(response: Any, deadline: float) -> bytes:
    # The socket timeout bounds each read; the deadline bounds the whole body.
    chunks: List[bytes] = []
    while True:
        if time.monotonic() >= deadline:
            raise TransportError("Gemini request timed out before the response completed.")
        chunk = response.read(READ_CHUNK_BYTES)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def create_gemini_client(api_key: str) -> GeminiRestClient:
    if not api_key:
        raise ClientSetupError("Gemini API key is empty.")
    return GeminiRestClient(api_key=api_key)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Ask Gemini a fixed list of prompts and track how often the company, "
            "its products and its domain are mentioned."
        )
    )
    parser.add_argument(
        "--env-file",
        default=DEFAULT_ENV_FILE,
        help="Dotenv file to load before reading the environment (default: .env).",
    )
    parser.add_argument(
        "--output-dir",
        default=DEFAULT_OUTPUT_DIR,
        help="Directory for the dated CSV file (default: current directory).",
    )
    parser.add_argument(
        "--query-limit",
        type=int,
        default=0,
        help=(
            "Optional limit on number of queries to run, in config order. "
            "0 means run all queries."
        ),
    )
    return parser.parse_args(argv)


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    load_dotenv(dotenv_path=path, override=False)


def normalize_api_key(raw_value: str | None) -> str:
    value = (raw_value or "").strip()
    # Guard against accidental quote wrapping in CI secrets.
    if len(value) >= 2 and (
        (value.startswith('"') and value.endswith('"'))
        or (value.startswith("'") and value.endswith("'"))
    ):
        value = value[1:-1].strip()
    return value


def split_terms(raw: str, separator: str) -> List[str]:
    return [item.strip() for item in raw.split(separator) if item.strip()]


def dedupe_preserve_order(items: Iterable[str]) -> List[str]:
    seen = set()
    output = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        output.append(item)
    return output


def load_config(environ: Mapping[str, str]) -> MonitorConfig:
    """Build the run configuration, reporting every missing variable at once."""
    api_key = normalize_api_key(environ.get(ENV_API_KEY))
    model = environ.get(ENV_MODEL, "").strip()
    domain_name = environ.get(ENV_DOMAIN, "").strip()
    company_name = environ.get(ENV_COMPANY, "").strip()
    product_names = dedupe_preserve_order(
        split_terms(environ.get(ENV_PRODUCTS, ""), PRODUCT_SEPARATOR)
    )
    queries = split_terms(environ.get(ENV_QUERIES, ""), QUERY_SEPARATOR)

    checks = [
        (ENV_API_KEY, api_key),
        (ENV_MODEL, model),
        (ENV_DOMAIN, domain_name),
        (ENV_COMPANY, company_name),
        (ENV_PRODUCTS, product_names),
        (ENV_QUERIES, queries),
    ]
    missing = [name for name, value in checks if not value]
    if missing:
        raise ConfigError(missing)

    return MonitorConfig(
        api_key=api_key,
        model=model,
        domain_name=domain_name,
        company_name=company_name,
        product_names=tuple(product_names),
        queries=tuple(queries),
    )


def parse_segment(raw_part: Any) -> Segment:
    if isinstance(raw_part, dict):
        text = raw_part.get("text")
        if isinstance(text, str):
            return TextSegment(text=text)
        for kind in NON_TEXT_SEGMENT_KINDS:
            if kind in raw_part:
                return OtherSegment(kind=kind, payload=raw_part[kind])
    return OtherSegment(kind="unknown", payload=raw_part)


def extract_answer_text(response: Mapping[str, Any]) -> str:
    """Return the text of the first part of the first candidate.

    Raises MalformedResponseError when the response has no candidate, no
    content parts, or a first part that is not text.
    """
    if not isinstance(response, Mapping):
        raise MalformedResponseError("Gemini response is not a JSON object.")
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        message = "Gemini returned no candidates."
        feedback = response.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            message = f"Gemini returned no candidates (blocked: {feedback['blockReason']})."
        raise MalformedResponseError(message)

    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    if not isinstance(content, dict):
        raise MalformedResponseError("First candidate has no content.")
    parts = content.get("parts")
    if not isinstance(parts, list) or not parts:
        raise MalformedResponseError("First candidate has no content parts.")

    segment = parse_segment(parts[0])
    if isinstance(segment, TextSegment):
        return segment.text
    raise UnsupportedSegmentKind(segment.kind)


def dump_response(response: Any) -> None:
    serialized = json.dumps(response, indent=2, ensure_ascii=False, default=str)
    print(f"Unexpected Gemini response:\n{serialized}", file=sys.stderr)


def ask(
    client: Any,
    model: str,
    query: str,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> str:
    effective_timeout = min(timeout, REQUEST_TIMEOUT_SECONDS)
    try:
        response = client.generate_content(
            model=model,
            prompt=query,
            timeout=effective_timeout,
        )
    except AskError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise TransportError(f"Gemini API call failed: {exc}") from exc

    try:
        return extract_answer_text(response)
    except MalformedResponseError:
        dump_response(response)
        raise


def contains_ignore_case(text: str, needle: str) -> bool:
    return needle.lower() in text.lower()


def analyze_mentions(text: str, config: MonitorConfig) -> Mentions:
    return Mentions(
        company_mentioned=contains_ignore_case(text, config.company_name),
        matched_products=tuple(
            product
            for product in config.product_names
            if contains_ignore_case(text, product)
        ),
        url_mentioned=contains_ignore_case(text, config.domain_name),
    )


def format_products(matched: Sequence[str]) -> str:
    return ", ".join(matched) if matched else NO_PRODUCTS


def format_bool(value: bool) -> str:
    return "true" if value else "false"


def timestamp_now(now: datetime | None = None) -> str:
    current = now if now is not None else datetime.now()
    return current.astimezone().isoformat(timespec="seconds")


def build_result(
    query: str,
    answer: str,
    config: MonitorConfig,
    now: datetime | None = None,
) -> QueryResult:
    mentions = analyze_mentions(answer, config)
    return QueryResult(
        query=query,
        timestamp=timestamp_now(now),
        company_mentioned=mentions.company_mentioned,
        products_mentioned=format_products(mentions.matched_products),
        url_mentioned=mentions.url_mentioned,
        full_response=answer,
    )


def run_queries(
    config: MonitorConfig,
    client: Any,
    sleep: Callable[[float], None] | None = None,
) -> RunReport:
    pause = sleep or time.sleep
    report = RunReport(total=len(config.queries))
    for index, query in enumerate(config.queries):
        try:
            answer = ask(client, config.model, query)
        except AskError as exc:
            message = f"{exc.__class__.__name__}: {exc}"
            print(f'Query "{query}" failed: {message}', file=sys.stderr)
            report.failures.append((query, message))
        else:
            report.results.append(build_result(query, answer, config))

        # Static rate limit between requests.
        if index < len(config.queries) - 1:
            pause(INTER_REQUEST_DELAY_SECONDS)
    return report


def output_filename(day: date) -> str:
    return OUTPUT_FILENAME_TEMPLATE.format(day=day.strftime("%Y%m%d"))


def export_results(
    results: Sequence[QueryResult],
    output_dir: str | Path = DEFAULT_OUTPUT_DIR,
    today: date | None = None,
) -> Path:
    directory = Path(output_dir).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / output_filename(today or date.today())
    with path.open("w", newline="", encoding="utf-8", errors="replace") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for result in results:
            writer.writerow(result.to_csv_row())
    print(f"Results saved to {path}")
    return path


def summarize_results(results: Sequence[QueryResult]) -> Dict[str, float] | None:
    total = len(results)
    if not total:
        return None
    company_count = sum(1 for result in results if result.company_mentioned)
    product_count = sum(
        1 for result in results if result.products_mentioned != NO_PRODUCTS
    )
    url_count = sum(1 for result in results if result.url_mentioned)
    return {
        "company_mention_rate": company_count / total * 100,
        "product_mention_rate": product_count / total * 100,
        "url_mention_rate": url_count / total * 100,
    }


def print_summary(results: Sequence[QueryResult]) -> None:
    rates = summarize_results(results)
    if rates is None:
        print("No results to summarize")
        return
    print(f"Company mention rate: {rates['company_mention_rate']:.1f}%")
    print(f"Product mention rate: {rates['product_mention_rate']:.1f}%")
    print(f"URL mention rate: {rates['url_mention_rate']:.1f}%")


def print_run_digest(report: RunReport) -> None:
    print(f"Successful queries: {len(report.results)}/{report.total}")
    if not report.failures:
        return
    print(f"Failed queries: {len(report.failures)}/{report.total}", file=sys.stderr)
    print("Top API errors:", file=sys.stderr)
    messages = [message for _query, message in report.failures]
    for message, count in Counter(messages).most_common(3):
        print(f"- {count}x {message}", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    if args.query_limit < 0:
        print("--query-limit must be >= 0", file=sys.stderr)
        return 2

    load_env_file(Path(args.env_file).expanduser())
    try:
        config = load_config(os.environ)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    try:
        client = create_gemini_client(config.api_key)
    except ClientSetupError as exc:
        print(f"Failed to create Gemini client: {exc}", file=sys.stderr)
        return 2

    total_queries = len(config.queries)
    if args.query_limit > 0:
        config = replace(config, queries=config.queries[: args.query_limit])
        print(
            f"Query limit enabled: running {len(config.queries)}/{total_queries} queries."
        )

    report = run_queries(config, client)

    exit_code = 0
    try:
        export_results(report.results, output_dir=args.output_dir)
    except (OSError, ValueError) as exc:
        print(f"Failed to write CSV: {exc}", file=sys.stderr)
        exit_code = 1

    print_summary(report.results)
    print_run_digest(report)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
