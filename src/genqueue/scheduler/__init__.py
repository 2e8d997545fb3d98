"""Job admission, dispatch, execution and settlement.

Why a SQLite-backed queue instead of Redis/Bull-style brokers?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every job carries a credit reservation. Queue state and ledger state must
move together: a job may only become ``failed`` in the same transaction that
credits its reservation back, and a job may only become ``completed`` once.
Keeping the queue rows next to the ledger rows lets each settlement be one
``BEGIN IMMEDIATE`` transaction guarded by a status compare-and-set, with no
two-phase coordination between a broker and a database.

Lifecycle: ``pending -> queued -> active -> completed | failed``. A stalled
``active`` job goes back to ``queued`` until it exceeds the stall limit.
"""
