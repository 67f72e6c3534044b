"""Numeric process exit codes used by the ``apicache`` command line.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~apicache.exceptions.ApiCacheError` subclass.
Shell wrappers can inspect the exit code to tell a corrupt cache file from a
missing one without parsing stderr.

Example::

    $ apicache sweep --database /var/cache/app.sqlite
    $ echo $?
    5   # EXIT_STORE_UNAVAILABLE -- the database could not be opened
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or an invalid cache key."""

EXIT_NOT_FOUND = 3
"""The requested cache record does not exist."""

EXIT_DATA_ERROR = 4
"""A value could not be serialised, or a stored record could not be decoded."""

EXIT_STORE_UNAVAILABLE = 5
"""The persistent store could not be opened or has been closed."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""
