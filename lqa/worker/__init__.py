# Pipeline worker internals.
# Entry-point: ``python -m lqa.worker.main`` (or the ``lqa-worker`` script).
