from datetime import datetime, timezone

import pytest
from apscheduler.jobstores.base import JobLookupError
from sqlalchemy import create_engine

from services.indexer.src.indexer.db.engine import init_db


class ManualJob:
    def __init__(self, scheduler, func, job_id, next_run, interval=None):
        self.scheduler = scheduler
        self.func = func
        self.id = job_id
        self.next_run = next_run
        self.interval = interval

    def remove(self):
        if self not in self.scheduler.jobs:
            raise JobLookupError(self.id)
        self.scheduler.jobs.remove(self)


class ManualScheduler:
    """Stands in for a BackgroundScheduler; jobs only run when a test advances the clock."""

    def __init__(self):
        self.now = 0.0
        self.jobs: list[ManualJob] = []

    def add_job(self, func, trigger=None, seconds=None, run_date=None, id=None, **kwargs):
        if trigger == "interval":
            job = ManualJob(self, func, id, self.now + seconds, interval=seconds)
        else:
            delay = 0.0
            if run_date is not None:
                delay = max((run_date - datetime.now(timezone.utc)).total_seconds(), 0.0)
            job = ManualJob(self, func, id, self.now + delay)
        self.jobs.append(job)
        return job

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [j for j in self.jobs if j.next_run <= target]
            if not due:
                break
            job = min(due, key=lambda j: j.next_run)
            self.now = job.next_run
            if job.interval is None:
                self.jobs.remove(job)
            else:
                job.next_run += job.interval
            job.func()
        self.now = target


@pytest.fixture
def engine():
    engine = create_engine("sqlite:///:memory:")
    init_db(engine)
    return engine


@pytest.fixture
def scheduler():
    return ManualScheduler()
