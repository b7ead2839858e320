"""
sync — durable job queue and the runner that drives provider syncs.

Provides:
  • ``JobQueue`` — atomic claim, FIFO order, centralized backoff
  • ``JobRunner`` — adapter calls, entity upserts, failure classification
  • periodic scheduling and the optional background worker
"""
