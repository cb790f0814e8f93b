"""Reminder occurrence service (expansion, job scheduling, delivery).

Recurring reminders are expanded into concrete occurrences which become
uniquely keyed delivery jobs; a Celery worker runs each job at its
occurrence instant and removes it afterwards.
"""
