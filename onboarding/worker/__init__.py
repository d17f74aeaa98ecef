"""
Background Worker Package
=========================

Recurring jobs that run alongside the orchestrator:

- ``scheduler.py``    -- APScheduler interval jobs (progress heartbeat,
                         self-healing sweep, session cleanup)
- ``self_healing.py`` -- Re-probe and remediate degraded units in completed sessions
"""
