"""Offline health analysis of a broker directory.

Reads the shared directory and its archives and produces a report with
issues, recommendations and a 0-100 health score. Nothing here modifies
request or response artifacts.
"""

from __future__ import annotations

import json
import os
import time
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from filebroker.config import BrokerConfig
from filebroker.payload import validate_response
from filebroker.store import ERRORS, PROCESSED, SharedDirectory

SUCCESS_RATE_FLOOR = 90.0
SLOW_PROCESSING_SECONDS = 5.0
SLOW_FS_MS = 100.0
PROBE_NAME = ".filebroker-probe"


def grade_for(score: int) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


class Diagnostics:
    def __init__(self, root: Path, config: Optional[BrokerConfig] = None) -> None:
        self.config = config or BrokerConfig()
        self.codec = self.config.codec()
        self.directory = SharedDirectory(Path(root), self.codec)
        self.issues: List[str] = []
        self.recommendations: List[str] = []

    def _issue(self, message: str, recommendation: Optional[str] = None) -> None:
        self.issues.append(message)
        if recommendation and recommendation not in self.recommendations:
            self.recommendations.append(recommendation)

    def _newest_responses(self, limit: int) -> List[Path]:
        def mtime(path: Path) -> float:
            try:
                return path.stat().st_mtime
            except FileNotFoundError:
                return 0.0

        responses = sorted(self.directory.list_responses(), key=mtime)
        return responses[-limit:] if limit > 0 else responses

    def check_layout(self) -> Dict[str, bool]:
        layout = {
            "root": self.directory.root.is_dir(),
            PROCESSED: self.directory.processed_dir.is_dir(),
            ERRORS: self.directory.errors_dir.is_dir(),
        }
        if not layout["root"]:
            self._issue("Communication directory missing", "Run `filebroker init` or start the broker")
        for area in (PROCESSED, ERRORS):
            if layout["root"] and not layout[area]:
                self._issue(f"{area}/ archive directory missing", "Start the broker to create archive folders")
        return layout

    def file_metrics(self) -> Dict[str, Any]:
        requests = self.directory.list_requests()
        responses = self.directory.list_responses()
        processed = len(self.directory.list_archive(PROCESSED))
        errored = len(self.directory.list_archive(ERRORS))
        finished = processed + errored
        success_rate = round(100.0 * processed / finished, 1) if finished else None
        if success_rate is not None and success_rate < SUCCESS_RATE_FLOOR:
            self._issue(f"Low success rate: {success_rate:.1f}%", "Review the errors/ archive")
        return {
            "active_requests": len(requests),
            "responses": len(responses),
            "processed": processed,
            "errors": errored,
            "success_rate": success_rate,
        }

    def stale_requests(self, threshold: Optional[float] = None, now: Optional[float] = None) -> List[Dict[str, Any]]:
        limit = self.config.stale_after if threshold is None else threshold
        current = time.time() if now is None else now
        stale: List[Dict[str, Any]] = []
        for path in self.directory.list_requests():
            try:
                age = current - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > limit:
                stale.append(
                    {
                        "file": path.name,
                        "sessionId": self.codec.decode_request(path.name),
                        "age_seconds": round(age, 1),
                    }
                )
        stale.sort(key=lambda item: item["age_seconds"], reverse=True)
        if stale:
            self._issue(
                f"{len(stale)} stale requests detected (>{limit / 60:.0f} minutes old)",
                "Check that the broker process is running",
            )
            extra = "Investigate file permission issues in the shared directory"
            if extra not in self.recommendations:
                self.recommendations.append(extra)
        return stale

    def validate_responses(self, sample: Optional[int] = None) -> Dict[str, Any]:
        limit = self.config.diagnostic_sample if sample is None else sample
        checks = Counter(
            {"valid_json": 0, "has_success": 0, "has_response": 0, "has_timestamp": 0, "valid": 0}
        )
        malformed: List[Dict[str, Any]] = []
        files = self._newest_responses(limit)
        for path in files:
            session_id = self.codec.decode_response(path.name)
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                malformed.append({"file": path.name, "problems": [f"unreadable: {exc}"]})
                continue
            checks["valid_json"] += 1
            if isinstance(data, dict):
                if "success" in data:
                    checks["has_success"] += 1
                if isinstance(data.get("response"), str) and data.get("response"):
                    checks["has_response"] += 1
                if data.get("timestamp"):
                    checks["has_timestamp"] += 1
            problems = validate_response(data, session_id=session_id)
            if problems:
                malformed.append({"file": path.name, "problems": problems})
            else:
                checks["valid"] += 1

        total = len(files)
        fraction = round(len(malformed) / total, 3) if total else 0.0
        if malformed:
            self._issue(
                f"{len(malformed)}/{total} sampled responses are malformed",
                "Check the responder output and response writer",
            )
        return {"sampled": total, "checks": dict(checks), "malformed": malformed, "malformed_fraction": fraction}

    def error_patterns(self, top_n: Optional[int] = None) -> Dict[str, Any]:
        limit = self.config.top_errors if top_n is None else top_n
        width = max(1, int(self.config.error_signature_length))
        records = self.directory.iter_error_records()
        buckets: Counter = Counter()
        for record in records:
            message = str(record.get("error") or "unknown error").strip()
            first_line = message.splitlines()[0] if message else "unknown error"
            buckets[first_line[:width]] += 1
        top = [{"signature": sig, "count": count} for sig, count in buckets.most_common(limit)]
        if records:
            self._issue(f"{len(records)} failed requests in errors/", "Review error logs for recurring issues")
        return {"total": len(records), "top": top}

    def processing_times(self) -> Dict[str, Any]:
        times: List[float] = []
        for path in self._newest_responses(self.config.diagnostic_sample):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            value = data.get("processingTime") if isinstance(data, dict) else None
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                times.append(float(value))
        if not times:
            return {"samples": 0, "average": None, "max": None}
        average = sum(times) / len(times)
        if average > SLOW_PROCESSING_SECONDS:
            self._issue(
                f"High average processing time: {average:.1f}s",
                "Consider optimizing the responder",
            )
        return {"samples": len(times), "average": round(average, 4), "max": round(max(times), 4)}

    def fs_latency(self) -> Optional[float]:
        if not self.directory.root.is_dir():
            return None
        probe = self.directory.root / PROBE_NAME
        started = time.perf_counter()
        try:
            probe.write_text("probe", encoding="utf-8")
            probe.read_text(encoding="utf-8")
        except OSError as exc:
            self._issue(f"File system probe failed: {exc}", "Check permissions and free disk space")
            return None
        finally:
            try:
                os.remove(probe)
            except OSError:
                pass
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if latency_ms > SLOW_FS_MS:
            self._issue(f"High file system latency: {latency_ms:.0f}ms", "Check disk performance and available space")
        return latency_ms

    def run(self, now: Optional[float] = None) -> Dict[str, Any]:
        self.issues = []
        self.recommendations = []
        report: Dict[str, Any] = {"root": str(self.directory.root)}
        report["layout"] = self.check_layout()
        if report["layout"]["root"]:
            report["metrics"] = self.file_metrics()
            report["stale_requests"] = self.stale_requests(now=now)
            report["responses"] = self.validate_responses()
            report["error_patterns"] = self.error_patterns()
            report["processing_times"] = self.processing_times()
            report["fs_latency_ms"] = self.fs_latency()
        score = max(0, 100 - 5 * len(self.issues))
        report["issues"] = list(self.issues)
        report["recommendations"] = list(self.recommendations)
        report["health_score"] = score
        report["grade"] = grade_for(score)
        return report


def format_report(report: Dict[str, Any]) -> str:
    lines = [f"Broker diagnostic: {report['root']}", ""]
    metrics = report.get("metrics")
    if metrics:
        lines.append(
            "Requests {active_requests}, responses {responses}, processed {processed}, errors {errors}".format(
                **metrics
            )
        )
        if metrics.get("success_rate") is not None:
            lines.append(f"Success rate: {metrics['success_rate']:.1f}%")
    patterns = (report.get("error_patterns") or {}).get("top") or []
    if patterns:
        lines.append("Most common errors:")
        lines.extend(f"  {item['count']}x: {item['signature']}" for item in patterns)
    lines.append("")
    if report["issues"]:
        lines.append(f"Found {len(report['issues'])} issues:")
        lines.extend(f"  {idx}. {issue}" for idx, issue in enumerate(report["issues"], start=1))
    else:
        lines.append("No issues detected.")
    if report["recommendations"]:
        lines.append("Recommendations:")
        lines.extend(f"  {idx}. {rec}" for idx, rec in enumerate(report["recommendations"], start=1))
    lines.append("")
    lines.append(f"Health score: {report['health_score']}% ({report['grade']})")
    return "\n".join(lines)
