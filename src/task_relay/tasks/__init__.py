"""Task continuation engine.

A task whose work does not fit in one execution window checkpoints its
progress into its own input record and asks to be invoked again. Each
invocation claims the record, runs the definition's work function once and
persists one of four outcomes: done, continue, error or aborted. Only
``continue`` leaves the task runnable; the next invocation resumes from the
checkpoint it wrote.

Coordinators fan out into child tasks and reconcile them by polling the
children's terminal statuses, so the same engine handles both long single
loops and fan-out/fan-in jobs.
"""
