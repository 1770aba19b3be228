"""Batched, retried, and metered submission of signed transactions."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger
from solders.instruction import Instruction
from solders.keypair import Keypair

from app.core.config import Settings

from .client import BlockhashToken
from .errors import classify_error, error_summary


class TransactionSender(Protocol):
    def latest_blockhash(self) -> BlockhashToken:
        ...

    def send_and_confirm(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        token: BlockhashToken,
    ) -> str:
        ...


@dataclass(slots=True)
class SubmissionTask:
    id: str
    instructions: Sequence[Instruction]
    signers: Sequence[Keypair]
    description: str = ""


@dataclass(slots=True)
class SubmissionResult:
    id: str
    success: bool
    duration_ms: float
    retries: int
    signature: str | None = None
    error: str | None = None
    retryable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "success": self.success,
            "signature": self.signature,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2),
            "retries": self.retries,
        }


def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    """Nearest-rank value at ``floor(fraction * n)`` clamped to the last index."""

    if not sorted_values:
        return 0.0
    index = min(math.floor(fraction * len(sorted_values)), len(sorted_values) - 1)
    return sorted_values[index]


@dataclass(slots=True)
class ExecutionMetrics:
    total: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    p99_duration_ms: float = 0.0
    throughput_per_sec: float = 0.0

    @classmethod
    def from_results(cls, results: Sequence[SubmissionResult]) -> "ExecutionMetrics":
        total = len(results)
        if total == 0:
            return cls()
        successes = sum(1 for result in results if result.success)
        durations = sorted(result.duration_ms for result in results)
        elapsed_ms = sum(durations)
        return cls(
            total=total,
            successes=successes,
            failures=total - successes,
            success_rate=successes / total,
            avg_duration_ms=elapsed_ms / total,
            p95_duration_ms=percentile(durations, 0.95),
            p99_duration_ms=percentile(durations, 0.99),
            throughput_per_sec=total / (elapsed_ms / 1000) if elapsed_ms > 0 else 0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.success_rate,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "p99_duration_ms": self.p99_duration_ms,
            "throughput_per_sec": self.throughput_per_sec,
        }


def validate_metrics(
    metrics: ExecutionMetrics,
    *,
    min_success_rate: float = 0.95,
    max_avg_ms: float = 5000,
    max_p95_ms: float = 10000,
) -> tuple[bool, list[str]]:
    violations: list[str] = []
    if metrics.success_rate < min_success_rate:
        violations.append(
            f"success rate {metrics.success_rate:.2%} below {min_success_rate:.2%}"
        )
    if metrics.avg_duration_ms > max_avg_ms:
        violations.append(
            f"average duration {metrics.avg_duration_ms:.0f}ms above {max_avg_ms:.0f}ms"
        )
    if metrics.p95_duration_ms > max_p95_ms:
        violations.append(
            f"p95 duration {metrics.p95_duration_ms:.0f}ms above {max_p95_ms:.0f}ms"
        )
    return not violations, violations


class ConcurrentExecutor:
    """Submit tasks in sequential batches with parallel execution inside each batch.

    Every attempt fetches a fresh blockhash. Retryable failures back off for
    ``retry_delay_seconds * attempt``; program rejections stop immediately.
    A task never raises out of its batch: exhausted or rejected tasks come back
    as ``success=False`` results.
    """

    def __init__(
        self,
        sender: TransactionSender,
        *,
        batch_size: int = 25,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        batch_delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.perf_counter,
        history_limit: int = 1000,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._sender = sender
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep
        self._clock = clock
        self._results: deque[SubmissionResult] = deque(maxlen=history_limit)
        self._results_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, sender: TransactionSender) -> "ConcurrentExecutor":
        return cls(
            sender,
            batch_size=settings.batch_size,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_backoff_seconds,
            batch_delay_seconds=settings.batch_delay_seconds,
        )

    # ------------------------------------------------------------------
    # Execution

    def execute_concurrent(self, tasks: Sequence[SubmissionTask]) -> list[SubmissionResult]:
        if not tasks:
            return []

        batches = [tasks[index : index + self.batch_size] for index in range(0, len(tasks), self.batch_size)]
        logger.info(
            "Executing {} transaction(s) in {} batch(es) of up to {}",
            len(tasks),
            len(batches),
            self.batch_size,
        )

        results: list[SubmissionResult] = []
        for batch_number, batch in enumerate(batches, start=1):
            if batch_number > 1 and self.batch_delay_seconds > 0:
                self._sleep(self.batch_delay_seconds)
            if len(batch) == 1:
                batch_results = [self._execute_task(batch[0])]
            else:
                with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="submit") as pool:
                    batch_results = list(pool.map(self._execute_task, batch))
            succeeded = sum(1 for result in batch_results if result.success)
            logger.info(
                "Batch {}/{} finished: {} succeeded, {} failed",
                batch_number,
                len(batches),
                succeeded,
                len(batch_results) - succeeded,
            )
            results.extend(batch_results)

        with self._results_lock:
            self._results.extend(results)
        return results

    def execute_single(self, task: SubmissionTask) -> SubmissionResult:
        return self.execute_concurrent([task])[0]

    def _execute_task(self, task: SubmissionTask) -> SubmissionResult:
        started = self._clock()
        attempt = 0
        while True:
            try:
                token = self._sender.latest_blockhash()
                signature = self._sender.send_and_confirm(task.instructions, task.signers, token)
            except Exception as exc:  # noqa: BLE001 - converted into a failed result
                classified = classify_error(exc)
                summary = error_summary(classified)
                if not classified.retryable:
                    logger.warning(
                        "Task {} ({}) rejected without retry: {}",
                        task.id,
                        task.description or "transaction",
                        summary,
                    )
                    return SubmissionResult(
                        id=task.id,
                        success=False,
                        duration_ms=self._elapsed_ms(started),
                        retries=attempt,
                        error=summary,
                        retryable=False,
                    )
                if attempt >= self.max_retries:
                    logger.error(
                        "Task {} ({}) failed after {} retries: {}",
                        task.id,
                        task.description or "transaction",
                        self.max_retries,
                        summary,
                    )
                    return SubmissionResult(
                        id=task.id,
                        success=False,
                        duration_ms=self._elapsed_ms(started),
                        retries=self.max_retries,
                        error=summary,
                        retryable=True,
                    )
                attempt += 1
                delay = self.retry_delay_seconds * attempt
                logger.warning(
                    "Task {} attempt {}/{} failed (retryable): {}; retrying in {:.2f}s",
                    task.id,
                    attempt,
                    self.max_retries + 1,
                    summary,
                    delay,
                )
                self._sleep(delay)
                continue

            return SubmissionResult(
                id=task.id,
                success=True,
                duration_ms=self._elapsed_ms(started),
                retries=attempt,
                signature=signature,
            )

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000

    # ------------------------------------------------------------------
    # Stored results

    @property
    def results(self) -> list[SubmissionResult]:
        with self._results_lock:
            return list(self._results)

    def failed_results(self) -> list[SubmissionResult]:
        return [result for result in self.results if not result.success]

    def clear_results(self) -> None:
        with self._results_lock:
            self._results.clear()

    def metrics(self, results: Sequence[SubmissionResult] | None = None) -> ExecutionMetrics:
        return ExecutionMetrics.from_results(self.results if results is None else results)

    def validate_metrics(
        self,
        metrics: ExecutionMetrics | None = None,
        *,
        min_success_rate: float = 0.95,
        max_avg_ms: float = 5000,
        max_p95_ms: float = 10000,
    ) -> tuple[bool, list[str]]:
        return validate_metrics(
            metrics or self.metrics(),
            min_success_rate=min_success_rate,
            max_avg_ms=max_avg_ms,
            max_p95_ms=max_p95_ms,
        )
