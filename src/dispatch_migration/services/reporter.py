"""
Migration Reporting Service

Writes the structured run result to disk and condenses it into summary
statistics for the CLI.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..contracts.migration_engine_service import EntityStatus, MigrationResult
from ..contracts.validation_service import Severity

logger = logging.getLogger(__name__)


class MigrationReporter:
    """
    Migration reporting service

    Generates JSON reports and summaries for migration runs, including
    per-entity counters, validation issues and classified errors.
    """

    def __init__(self, output_dir: Optional[Path] = None):
        """
        Initialize reporter

        Args:
            output_dir: Directory for report output (default: reports/)
        """
        self.output_dir = Path(output_dir) if output_dir else Path("reports")
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)

    def generate_run_report(self, result: MigrationResult) -> Path:
        """
        Generate run report

        Args:
            result: Outcome of a migration run

        Returns:
            Path to generated report file
        """
        report_data = {
            'generated_at': datetime.now().isoformat(),
            'summary': self.generate_summary(result),
            'result': result.to_dict(),
        }

        report_path = self.output_dir / f"run_report_{result.operation_id}.json"

        with open(report_path, 'w') as f:
            json.dump(report_data, f, indent=2, default=str)

        self.logger.info(f"Generated run report: {report_path}")
        return report_path

    def generate_plan_report(self, pending: Dict[str, int]) -> Path:
        """Write the pending row counts of a plan to ``plan_report_<stamp>.json``"""
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        report_path = self.output_dir / f"plan_report_{stamp}.json"

        with open(report_path, 'w') as f:
            json.dump({
                'generated_at': datetime.now().isoformat(),
                'pending': pending,
                'total_pending': sum(pending.values()),
            }, f, indent=2)

        self.logger.info(f"Generated plan report: {report_path}")
        return report_path

    def generate_summary(self, result: MigrationResult) -> Dict[str, Any]:
        """
        Generate run summary statistics

        Args:
            result: Outcome of a migration run

        Returns:
            Summary dictionary
        """
        statuses = [stats.status for stats in result.entities.values()]
        total_entities = len(statuses)
        completed = sum(1 for s in statuses if s in (EntityStatus.COMPLETED, EntityStatus.PARTIAL))
        issues = result.validation_issues

        summary = {
            'operation_id': result.operation_id,
            'status': result.status.value,
            'success': result.success,
            'dry_run': result.dry_run,
            'total_entities': total_entities,
            'completed_entities': completed,
            'partial_entities': statuses.count(EntityStatus.PARTIAL),
            'failed_entities': statuses.count(EntityStatus.FAILED),
            'skipped_entities': statuses.count(EntityStatus.SKIPPED),
            'total_records_processed': result.total_processed,
            'successful_records': result.successful,
            'skipped_records': result.skipped,
            'failed_records': result.failed,
            'validation_errors': sum(1 for i in issues if i.severity == Severity.ERROR),
            'validation_warnings': sum(1 for i in issues if i.severity == Severity.WARNING),
            'errors': len(result.errors),
            'duration': result.duration,
            'success_rate': (completed / total_entities * 100) if total_entities > 0 else 0,
        }
        if result.rolled_back:
            summary['rolled_back_records'] = sum(result.rolled_back.values())

        return summary

    def failed_entities(self, result: MigrationResult) -> List[str]:
        return [name for name, stats in result.entities.items() if stats.status == EntityStatus.FAILED]
