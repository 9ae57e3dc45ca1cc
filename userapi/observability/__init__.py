"""Request instrumentation: metric registry, instruments, middleware and exposition.

Nothing here keeps module-level state; the registry is built once by the app
factory and handed to every middleware and recorder that needs it.
"""

from __future__ import annotations
