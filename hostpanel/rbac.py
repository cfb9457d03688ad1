from .errors import AuthorizationError, NotFoundError


class RBAC:
    """Role-based access control for panel resources."""

    @staticmethod
    def is_admin(user):
        """Check if user is admin."""
        return user.get('role') == 'admin'

    @staticmethod
    def is_reseller(user):
        """Check if user is reseller."""
        return user.get('role') == 'reseller'

    @staticmethod
    def owns_domain(db, user_id, domain_id):
        """Check if user owns a domain."""
        domain = db.fetch_one("SELECT user_id FROM domains WHERE id=?", (domain_id,))

        if not domain:
            return False

        return domain['user_id'] == user_id

    @staticmethod
    def can_access_domain(db, user, domain_id):
        """Check if user can access a domain (owns it or is admin)."""
        if RBAC.is_admin(user):
            return True

        return RBAC.owns_domain(db, user['user_id'], domain_id)

    @staticmethod
    def can_manage_user(db, user, target_user_id):
        """Admins manage everyone, resellers manage their own customers."""
        if RBAC.is_admin(user) or user['user_id'] == target_user_id:
            return True
        if RBAC.is_reseller(user):
            row = db.fetch_one("SELECT parent_id FROM users WHERE id=?", (target_user_id,))
            return bool(row) and row['parent_id'] == user['user_id']
        return False

    @staticmethod
    def get_domain_for(db, user, domain_id):
        """
        Load a domain the caller may touch.
        Missing and foreign domains both raise 403 so the target's existence
        is not disclosed to other tenants.
        """
        domain = db.fetch_one("SELECT * FROM domains WHERE id=?", (domain_id,))
        if not domain:
            if RBAC.is_admin(user):
                raise NotFoundError('Domain not found')
            raise AuthorizationError()
        if not RBAC.is_admin(user) and domain['user_id'] != user['user_id']:
            raise AuthorizationError()
        return domain
