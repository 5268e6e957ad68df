from .common import *  # noqa
from .picking import *  # noqa
from .settings import *  # noqa
from .security_audit import *  # noqa

# Platform event-bus tables (transactional outbox + webhook subscriptions)
from app.events.outbox import *  # noqa
from app.events.subscriptions import *  # noqa
