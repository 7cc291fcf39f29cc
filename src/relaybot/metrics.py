"""
运行时指标，统计 LLM 调用、消息流量与提醒投递情况，由 status 命令展示。
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class RuntimeMetrics:
    llm_call_count: int = 0
    llm_total_latency_ms: float = 0.0
    llm_error_count: int = 0
    msg_in_count: int = 0
    msg_out_count: int = 0
    pre_alert_count: int = 0
    final_alert_count: int = 0
    dispatch_failure_count: int = 0
    sweep_count: int = 0
    started_at: float = 0.0
    last_llm_call_at: float | None = None

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = time.time()

    def record_llm_call(self, latency_ms: float, error: bool = False) -> None:
        self.llm_call_count += 1
        self.llm_total_latency_ms += max(0.0, latency_ms)
        self.last_llm_call_at = time.time()
        if error:
            self.llm_error_count += 1

    def record_msg_in(self) -> None:
        self.msg_in_count += 1

    def record_msg_out(self) -> None:
        self.msg_out_count += 1

    def record_alert(self, final: bool) -> None:
        if final:
            self.final_alert_count += 1
        else:
            self.pre_alert_count += 1

    def record_dispatch_failure(self) -> None:
        self.dispatch_failure_count += 1

    def record_sweep(self) -> None:
        self.sweep_count += 1

    def snapshot(self) -> dict:
        avg_latency_ms = 0.0
        if self.llm_call_count > 0:
            avg_latency_ms = self.llm_total_latency_ms / self.llm_call_count

        return {
            "uptime_seconds": round(time.time() - self.started_at),
            "llm_call_count": self.llm_call_count,
            "llm_error_count": self.llm_error_count,
            "llm_avg_latency_ms": round(avg_latency_ms, 2),
            "msg_in_count": self.msg_in_count,
            "msg_out_count": self.msg_out_count,
            "pre_alert_count": self.pre_alert_count,
            "final_alert_count": self.final_alert_count,
            "dispatch_failure_count": self.dispatch_failure_count,
            "sweep_count": self.sweep_count,
            "last_llm_call_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_llm_call_at))
                if self.last_llm_call_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
