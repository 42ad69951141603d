from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

FinalVerdict = Literal["Safe", "Anomalous", "Malicious", "Whitelisted", "Scan Failed", "Unknown"]
RiskLevel = Literal["Low", "Medium", "High", "Unknown"]
WhitelistSource = Literal["manual", "ranked", "none"]

# Only successful ML verdicts are worth persisting.
CACHEABLE_VERDICTS: frozenset[str] = frozenset({"Safe", "Anomalous", "Malicious"})


def utcnow() -> datetime:
    """Naive UTC timestamp; the durable store keeps naive UTC datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Verdict(BaseModel):
    final_verdict: FinalVerdict
    confidence_score: str = "0%"
    anomaly_risk_level: RiskLevel = "Unknown"
    explanation: str = ""
    tip: str = ""
    cache_source: str = "ml_service"
    last_scanned: datetime | None = None
    expires_at: datetime | None = None

    @property
    def is_cacheable(self) -> bool:
        return self.final_verdict in CACHEABLE_VERDICTS

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class WhitelistResult(BaseModel):
    whitelisted: bool
    domain: str | None = None
    source: WhitelistSource = "none"
    reason: str
    # Membership only: a ranked hit reports the band, never the exact rank.
    rank: str | None = None


class ResolveResult(BaseModel):
    verdict: Verdict
    from_cache: bool = False
    whitelisted: bool = False
    link_id: int | None = None


class BatchResult(BaseModel):
    verdicts: dict[str, Union[Verdict, Literal["failed"]]]
    new_count: int = 0
    cached_count: int = 0


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    links: list[str] = Field(default_factory=list)
    domain: str | None = None
    browser_info: str | None = Field(None, alias="browserInfo")
    session_id: int | None = Field(None, alias="sessionId")
    page_url: str | None = Field(None, alias="pageUrl")
    page_refreshed: bool = Field(False, alias="pageRefreshed")


class AnalyzeResponse(BaseModel):
    success: bool = True
    verdicts: dict[str, Union[Verdict, Literal["failed"]]]
    session_ID: int | None = None
    processed: int
    newLinks: int
    cachedLinks: int


class ClassifierHealth(BaseModel):
    status: Literal["healthy", "unhealthy"]
    url: str
    details: Any | None = None
    error: str | None = None


class CleanupResponse(BaseModel):
    expired_removed: int
    non_cacheable_removed: int


class LinkRequest(BaseModel):
    url: str = Field(..., min_length=1)


class UnshortenResponse(BaseModel):
    success: bool
    url: str | None = None
    message: str | None = None


class ExtractLinksResponse(BaseModel):
    success: bool
    links: list[str] = []
    error: str | None = None
