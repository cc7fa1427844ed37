"""Debounced file saves.

Each edit (re)schedules a one-shot job keyed by the file; a burst of edits
within the delay collapses into a single write of the latest content.
"""
import logging
from datetime import datetime, timedelta

from apscheduler.jobstores.base import JobLookupError

logger = logging.getLogger(__name__)

JOB_PREFIX = 'autosave:'


class Autosaver:
    def __init__(self, workspace, scheduler, delay=1.0, on_saved=None):
        self.workspace = workspace
        self.scheduler = scheduler
        self.delay = delay
        self.on_saved = on_saved

    @staticmethod
    def job_id(owner_id, file_id):
        return f'{JOB_PREFIX}{owner_id}/{file_id}'

    def schedule(self, user_id, file_id, content, owner_id=None, context=None):
        """Save ``content`` once no newer edit arrived for ``delay`` seconds"""
        job_id = self.job_id(owner_id or user_id, file_id)
        self.scheduler.add_job(
            self._save,
            trigger='date',
            run_date=datetime.now() + timedelta(seconds=self.delay),
            args=(user_id, file_id, content, owner_id, context),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        return job_id

    def _save(self, user_id, file_id, content, owner_id, context):
        try:
            record = self.workspace.update_file_content(user_id, file_id, content, owner_id)
        except Exception:
            logger.exception('Error saving file %s', file_id)
            return
        if record is None:
            logger.warning('Autosave skipped, file %s no longer exists', file_id)
            return
        if self.on_saved:
            self.on_saved(record, context)

    def pending(self):
        return [job.id for job in self.scheduler.get_jobs() if job.id.startswith(JOB_PREFIX)]

    def flush(self):
        """Run every pending save now"""
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(JOB_PREFIX):
                continue
            try:
                self.scheduler.remove_job(job.id)
            except JobLookupError:
                # Fired while we were flushing
                continue
            job.func(*job.args, **job.kwargs)
