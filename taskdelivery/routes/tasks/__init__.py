"""Task routes package.

This package organizes task-related routes into logical submodules:
- crud: Create, list and read tasks (bundles appear as one task)
- queries: Per-user task lists (in review, assigned, completed, offers)
- negotiation: Claim, propose, counter, accept, reject, finalize
- workflow: Completion, cancellation and per-stop progress
- helpers: Shared utilities (error responses, retries)
"""

from flask import Blueprint

tasks_bp = Blueprint('tasks', __name__)

# Import and register all route modules
from taskdelivery.routes.tasks import crud  # noqa: E402,F401
from taskdelivery.routes.tasks import queries  # noqa: E402,F401
from taskdelivery.routes.tasks import negotiation  # noqa: E402,F401
from taskdelivery.routes.tasks import workflow  # noqa: E402,F401
