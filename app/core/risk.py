from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List
import httpx
from app.core.workflow import DDLType, Target

log = logging.getLogger(__name__)

LEVELS = ("low", "medium", "high", "critical")

SYSTEM_DATABASES = ("mysql", "information_schema", "performance_schema", "sys")

LARGE_TABLE_ROWS = 10_000_000
MEDIUM_TABLE_ROWS = 1_000_000


@dataclass
class RiskAssessment:
    level: str = "low"
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    annotations: List[str] = field(default_factory=list)

    def raise_to(self, level: str) -> None:
        if LEVELS.index(level) > LEVELS.index(self.level):
            self.level = level

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
            "annotations": list(self.annotations),
        }


def assess(
    ddl_type: DDLType,
    alter_statement: str,
    database_name: str,
    host: str = "",
    environment: str = "",
    table_rows: int = 0,
) -> RiskAssessment:
    """Local heuristics. Advisory only; never blocks a build."""
    risk = RiskAssessment()
    upper = alter_statement.upper()

    if ddl_type == DDLType.DROP_COLUMN or "DROP COLUMN" in upper:
        risk.raise_to("high")
        risk.warnings.append("Dropping a column is irreversible; make sure the data is backed up")
    if ddl_type == DDLType.DROP_INDEX or "DROP INDEX" in upper or "DROP KEY" in upper:
        risk.raise_to("medium")
        risk.warnings.append("Dropping an index may degrade query performance")
        risk.suggestions.append("Confirm no critical query depends on this index")
    if ddl_type == DDLType.MODIFY_COLUMN and "NOT NULL" in upper:
        risk.raise_to("medium")
        risk.warnings.append("Changing a column to NOT NULL fails on existing NULL values")
    if ddl_type == DDLType.ADD_COLUMN and "NOT NULL" in upper and "DEFAULT" not in upper:
        risk.warnings.append("Adding a NOT NULL column without a DEFAULT may fail on existing rows")
    if ddl_type == DDLType.FRAGMENT:
        risk.suggestions.append("Table rebuild copies every row; run it off-peak")
    if "RENAME TO" in upper:
        risk.raise_to("high")
        risk.warnings.append("Renaming the table breaks clients that reference the old name")

    if database_name.lower() in SYSTEM_DATABASES:
        risk.raise_to("critical")
        risk.warnings.append(f"{database_name} is a system database")

    if table_rows > LARGE_TABLE_ROWS:
        risk.raise_to("high")
        risk.warnings.append("Large table; execution will take a long time, prefer an off-peak window")
    elif table_rows > MEDIUM_TABLE_ROWS:
        risk.raise_to("medium")
        risk.suggestions.append("Consider tuning --chunk-size for this table size")

    if environment == "prod" or "prod" in host.lower():
        risk.raise_to("high")
        risk.warnings.append("Production environment; proceed with care")

    return risk


class RiskAnalyzer:
    """External advisory risk collaborator."""

    def analyze(self, target: Target, ddl_type: DDLType, original_ddl: str | None) -> List[str]:
        return []


class HttpRiskAnalyzer(RiskAnalyzer):
    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def analyze(self, target: Target, ddl_type: DDLType, original_ddl: str | None) -> List[str]:
        payload = {
            "connection_id": target.connection_id,
            "database_name": target.database_name,
            "table_name": target.table_name,
            "ddl_type": DDLType(ddl_type).value,
            "original_ddl": original_ddl,
        }
        try:
            r = self.client.post(f"{self.base_url}/analyze", json=payload)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Risk analysis unavailable for %s: %s", target, e)
            return []
        annotations = data.get("annotations") if isinstance(data, dict) else data
        if not isinstance(annotations, list):
            return []
        return [str(a) for a in annotations]


def build_risk_analyzer(settings) -> RiskAnalyzer:
    if settings.risk_service_url:
        return HttpRiskAnalyzer(settings.risk_service_url, timeout=settings.http_timeout_seconds)
    return RiskAnalyzer()
