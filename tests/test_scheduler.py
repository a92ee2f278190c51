import unittest
from unittest.mock import Mock, patch


class SyncSchedulerJobTests(unittest.TestCase):
    def test_sync_job_skips_when_run_in_progress_and_closes_session(self):
        from issuesync import scheduler as scheduler_module
        from issuesync.errors import SyncInProgress

        db = Mock()
        service = Mock()
        service.return_value.run_sync.side_effect = SyncInProgress("busy")

        with patch.object(scheduler_module, "SessionLocal", return_value=db), patch.object(
            scheduler_module, "SyncService", service
        ):
            scheduler_module.SyncScheduler()._sync_job()

        options = service.return_value.run_sync.call_args[0][0]
        self.assertEqual(options.triggered_by, "scheduler")
        db.close.assert_called_once()

    def test_backfill_job_logs_failures(self):
        from issuesync import scheduler as scheduler_module

        db = Mock()
        with patch.object(scheduler_module, "SessionLocal", return_value=db), patch.object(
            scheduler_module, "backfill_person_refs", side_effect=RuntimeError("db down")
        ):
            with self.assertLogs("issuesync.scheduler", level="ERROR"):
                scheduler_module.SyncScheduler()._backfill_job()

        db.close.assert_called_once()

    def test_schedule_jobs_registers_sync_and_backfill(self):
        from issuesync import scheduler as scheduler_module
        from issuesync.config import settings

        sched = scheduler_module.SyncScheduler()
        sched.scheduler = Mock()
        with patch.object(settings, "github_owner", "acme"), patch.object(settings, "github_repo", "widgets"):
            sched.schedule_jobs()

        job_ids = [call.kwargs["id"] for call in sched.scheduler.add_job.call_args_list]
        self.assertEqual(job_ids, [scheduler_module.SYNC_JOB_ID, scheduler_module.BACKFILL_JOB_ID])


if __name__ == "__main__":
    unittest.main()
