"""Generation job dispatcher.

Requests are fingerprinted and served from the result cache when possible.
Otherwise one durable job per user is queued in SQLite, claimed by a worker
thread and executed against a pool of rate-limited upstream credentials.
Structured output is validated, repaired when the model wrapped it in prose,
and written back to the cache once the job completes.

Why not a broker-backed task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard parts are credential rotation under a shared quota, per-attempt
prompt escalation and the single-active-job rule per user. A conditional
``UPDATE ... WHERE status = 'pending'`` claim on SQLite covers the queueing
part for a single host.
"""
