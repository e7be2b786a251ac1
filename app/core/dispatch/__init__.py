# app/core/dispatch/__init__.py
"""
Dispatch layer: composing, targeting and delivering broadcast tasks.

- ``domain``    : tasks, content variants, payloads, send results
- ``composer``  : validation of user input into content
- ``resolver``  : group selectors -> active webhook endpoints
- ``engine``    : serial delivery of one content to many endpoints
- ``lifecycle`` : task persistence and status transitions
- ``service``   : orchestration used by the HTTP layer

Nothing here imports FastAPI or aiohttp; transports and stores are
injected through the protocols in ``ports``.
"""
