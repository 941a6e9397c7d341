"""
Job Queue — Durable work queue and the dispatcher that drains it.

- WorkQueue stores jobs in the outreach store and hands them out with
  atomic conditional claims
- JobDispatcher polls the queue and runs claimed jobs through typed handlers
- Tickers drive both the dispatcher and the campaign scheduler
"""
