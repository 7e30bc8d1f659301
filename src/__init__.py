"""StoreFlow retail store management.

The REST backend lives in :mod:`app_web` on top of the SQLite DAOs in
:mod:`dao`; the storekeeper side is :mod:`app` and :mod:`cli`, with the
checkout arithmetic in :mod:`checkout` and the order commit sequence in
:mod:`order_commit`.
"""
