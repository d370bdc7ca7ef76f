"""
Recurring and deferred job scheduling.

    cron.py         next-fire computation (croniter, UTC)
    scheduler.py    Scheduler: schedule_jobs / unschedule_jobs / schedule_one_time_job
    definitions.py  the platform's recurring job table

Import from the submodules. The package namespace stays empty because
the queue layer imports ``cron`` while the scheduler imports the queue layer.
"""
