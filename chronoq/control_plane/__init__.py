"""
Scheduling core: state machine, retry policy, schedules, job store
implementations, task queue backends, handler registry and the job API.
"""
