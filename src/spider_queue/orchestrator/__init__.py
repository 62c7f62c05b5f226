"""Queue and supervisor for an external scraping worker.

Why not Celery / RQ / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part is not queuing. It is owning exactly one long-running worker
process: feeding it a frozen configuration on stdin, turning its JSON-lines
stdout into durable task state, pausing dispatch when the credential goes
bad, and repairing rows a crashed process left `running`. A broker would add
an operational dependency to a single-machine, SQLite-only tool while all of
that logic would still have to live in custom task code.
"""
