"""
Background job queue, processor and cron scheduler.
"""
