"""
Response telemetry for the Bluesky API client.

Counts responses by status class, 429s seen, and calls that ended in a
terminal failure, so a crawl can report how healthy its API traffic was.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class ResponseStats:
    """
    Statistics for HTTP response tracking.

    Attributes:
        success_2xx: Responses with a 2xx status
        client_error_4xx: Responses with a 4xx status (429 included)
        server_error_5xx: Responses with a 5xx status
        rate_limited_429: 429 responses (each retry counts)
        status_codes: Count per exact status code
        transport_errors: Requests that never produced a response
        retry_exhausted: Calls abandoned after the 429 retry budget ran out
    """
    success_2xx: int = 0
    client_error_4xx: int = 0
    server_error_5xx: int = 0
    rate_limited_429: int = 0
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    transport_errors: int = 0
    retry_exhausted: int = 0

    def record_response(self, status_code: int):
        """Record an HTTP response by status code."""
        self.status_codes[status_code] += 1

        if 200 <= status_code < 300:
            self.success_2xx += 1
        elif 400 <= status_code < 500:
            self.client_error_4xx += 1
            if status_code == 429:
                self.rate_limited_429 += 1
        elif 500 <= status_code < 600:
            self.server_error_5xx += 1

    def record_transport_error(self):
        self.transport_errors += 1

    def record_retry_exhausted(self):
        self.retry_exhausted += 1

    @property
    def total(self) -> int:
        return sum(self.status_codes.values())

    def get_summary(self) -> str:
        """
        Get a human-readable summary of response statistics.

        Returns:
            Multi-line string; rate-limit and failure lines only when non-zero
        """
        summary = [
            f"Total Responses: {self.total}",
            f"  Success (2xx): {self.success_2xx}",
            f"  Client Error (4xx): {self.client_error_4xx}",
            f"  Server Error (5xx): {self.server_error_5xx}",
        ]

        if self.rate_limited_429 > 0:
            summary.append(f"  Rate Limited (429): {self.rate_limited_429}")

        if self.transport_errors > 0:
            summary.append(f"Transport Errors: {self.transport_errors}")

        if self.retry_exhausted > 0:
            summary.append(f"Retries Exhausted: {self.retry_exhausted}")

        return "\n".join(summary)
