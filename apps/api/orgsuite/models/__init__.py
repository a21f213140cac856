from orgsuite.authz.models import Membership, Role
from orgsuite.credits.models import ApplicationAllocation, CreditTransaction
from orgsuite.hierarchy.models import Entity
from orgsuite.invitations.models import Invitation, InvitationEntity

__all__ = [
	"ApplicationAllocation",
	"CreditTransaction",
	"Entity",
	"Invitation",
	"InvitationEntity",
	"Membership",
	"Role",
]
