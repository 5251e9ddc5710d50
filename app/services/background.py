"""Detached best-effort work.

Confirmation emails and provider status mirrors run after the database
transition has committed. Their failure is logged and never propagates
back into the transition that triggered them.
"""

import logging
import threading

from flask import current_app

logger = logging.getLogger(__name__)


def _call(fn, args, kwargs):
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.error(
            f"Background task {getattr(fn, '__name__', fn)} failed",
            exc_info=True,
        )


def _run(app, fn, args, kwargs):
    with app.app_context():
        _call(fn, args, kwargs)


def run_detached(fn, *args, **kwargs):
    """Run fn on a daemon thread with its own app context.

    Runs inline in the current context when SIDE_EFFECTS_INLINE is set
    (tests, CLI one-shots).
    """
    app = current_app._get_current_object()
    if app.config.get("SIDE_EFFECTS_INLINE"):
        _call(fn, args, kwargs)
        return None

    thread = threading.Thread(target=_run, args=(app, fn, args, kwargs))
    thread.daemon = True
    thread.start()
    return thread
