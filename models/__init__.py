from .user import User  # noqa: F401
from .subscription import Subscription  # noqa: F401
from .chat import ChatMessage  # noqa: F401
from .auth import OtpCode, RefreshToken  # noqa: F401
from .audit import AuditLog  # noqa: F401
