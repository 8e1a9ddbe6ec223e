from app.platform.security import AuthorizationError, Principal, Role, decide

__all__ = ["AuthorizationError", "Principal", "Role", "decide"]
