"""Distributed build process for session dependency graphs.

Why not Celery / Dask / Ray?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The problem here is not distributing function calls, it is agreeing on build state between
independent worker processes that may start and stop at any time. The pieces a generic task
framework leaves to the application are exactly the ones this package implements:

- Dependency-gated scheduling with a remaining-work estimate from previous builds.
- Content-addressed caching: a session is reused when its sources, its inputs and its stored
  artifact match the last successful build.
- A pull/merge/apply/push protocol over one SQLite build store, with a monotone serial so
  workers skip pulls when nothing changed.
- Shared progress and a shared stop flag, so that an interrupt on one worker cancels the build
  everywhere.

Workers only need the same project descriptor and access to the same SQLite file.
"""
