from __future__ import annotations

from dataclasses import dataclass

from dca_executor.core.request_spec import RequestSpec


@dataclass(frozen=True)
class SentimentRequestFactory:
    base_url: str = "https://api.alternative.me"
    index_path: str = "/fng/"

    def build_index_request(self, limit: int = 1) -> RequestSpec:
        if limit <= 0:
            raise ValueError("limit must be positive")
        return RequestSpec(
            method="GET",
            base_url=self.base_url,
            path=self.index_path,
            query={"limit": int(limit), "format": "json"},
            headers={"Accept": "application/json"},
        )


__all__ = ["SentimentRequestFactory"]
