from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, Mapping, Optional

from passportcheck.core.errors import InternalProcessingError
from passportcheck.core.models import Category
from passportcheck.logging_config import get_logger
from passportcheck.validation.checks import CHECKS, EvaluationInput
from passportcheck.validation.report import ComplianceCheck, ComplianceReport

logger = get_logger(__name__)

CheckFn = Callable[[EvaluationInput], ComplianceCheck]


class ComplianceEvaluator:
    """
    Run the category checks concurrently and assemble the report.

    Checks only read the (immutable) EvaluationInput, so they are fanned out
    to a thread pool and joined at a single barrier. The report order comes
    from the Category enum, not from completion order, so repeated runs give
    identical reports.
    """

    def __init__(self, checks: Optional[Mapping[Category, CheckFn]] = None, max_workers: int = len(Category)) -> None:
        self.checks: Dict[Category, CheckFn] = dict(CHECKS)
        self.checks.update(checks or {})
        self.max_workers = max_workers

    def run_check(self, category: Category, inp: EvaluationInput) -> ComplianceCheck:
        """Run one check synchronously."""
        try:
            return self.checks[category](inp)
        except Exception as e:
            logger.error("%s check crashed", category.value, exc_info=True)
            raise InternalProcessingError(f"{category.value} check failed: {e}") from e

    def run_checks(
        self,
        inp: EvaluationInput,
        categories: Iterable[Category] = tuple(Category),
        known: Optional[Mapping[Category, ComplianceCheck]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[Category, ComplianceCheck]:
        """
        Run `categories` concurrently, reusing results already in `known`.

        Raises InternalProcessingError if a check crashes or the timeout
        expires before all checks finish.
        """
        results: Dict[Category, ComplianceCheck] = dict(known or {})
        pending = [c for c in categories if c not in results]
        if not pending:
            return results

        pool = ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(pending))), thread_name_prefix="check")
        try:
            futures: Dict[Future, Category] = {pool.submit(self.run_check, c, inp): c for c in pending}
            done, not_done = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)
            for fut in done:
                exc = fut.exception()
                if exc is not None:
                    raise exc
            if not_done:
                names = ", ".join(sorted(futures[f].value for f in not_done))
                # Running checks cannot be interrupted; their threads exit when the check returns.
                logger.warning("Abandoning %d running check(s) after timeout: %s", len(not_done), names)
                raise InternalProcessingError(f"Compliance checks timed out after {timeout:.1f}s ({names})")
            for fut, category in futures.items():
                results[category] = fut.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    def evaluate(
        self,
        inp: EvaluationInput,
        known: Optional[Mapping[Category, ComplianceCheck]] = None,
        timeout: Optional[float] = None,
    ) -> ComplianceReport:
        """Run all four checks and build the full report."""
        results = self.run_checks(inp, tuple(Category), known=known, timeout=timeout)
        report = ComplianceReport.assemble(results.values())
        logger.debug(
            "Evaluated: compliant=%s score=%.0f (%s)",
            report.compliant,
            report.score,
            ", ".join(f"{c.category.value}={'ok' if c.valid else 'fail'}" for c in report.checks),
        )
        return report
