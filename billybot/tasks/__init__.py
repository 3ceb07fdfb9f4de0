"""
Celery tasks package.

Scheduled jobs that keep connected mailboxes' push notifications alive.
"""
