"""
Job orchestration for the portal.

This package provides a store-backed job system with:
- Atomic cross-process claims with heartbeats and stale-claim recovery
- Five queue families with independent cadences and in-flight ceilings
- Fleet-wide rendering semaphore and AI-tagging budget throttle
- Exponential backoff retries with jitter and dead-job escalation
"""
