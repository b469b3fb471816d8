"""Consume daemon: schedules ready tasks onto coding-agent subprocesses.

The runner is a single-threaded tick loop. Agent processes run as independent
OS subprocesses and are polled each tick; health and concurrency bookkeeping is
lock-guarded so completion handling can never double count.
"""
