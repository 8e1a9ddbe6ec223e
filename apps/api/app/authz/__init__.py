from app.authz.models import Team, TeamMembership

__all__ = ["Team", "TeamMembership"]
