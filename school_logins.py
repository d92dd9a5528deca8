"""Login credentials for schools created by a results upload."""

import logging
import secrets

from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

SCHOOL_ADMIN_ROLE = 'school_admin'


def generate_temp_password(length=10):
    """Generate a temporary password."""
    alphabet = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789!@#$"
    return ''.join(secrets.choice(alphabet) for _ in range(max(8, length)))


def hash_password(password):
    """Hash a password."""
    return generate_password_hash(password)


class SchoolLoginProvisioner:
    """Creates one ``school_admin`` user per provisioned school.

    Runs in its own transaction after the school row is committed, so a
    failure here is reported but never removes the school.
    """

    def __init__(self, repository, password_length=10):
        self.repository = repository
        self.password_length = password_length

    def _free_username(self, c, school_id):
        base = f'school{school_id}'
        username = base
        suffix = 1
        while self.repository.find_user(c, username):
            suffix += 1
            username = f'{base}_{suffix}'
        return username

    def provision(self, school_id, school_name=''):
        try:
            with self.repository.transaction() as c:
                username = self._free_username(c, school_id)
                password = generate_temp_password(self.password_length)
                self.repository.create_user(c, username, hash_password(password), SCHOOL_ADMIN_ROLE, school_id)
        except Exception as exc:
            logger.error('Login provisioning failed for school %s: %s', school_id, exc)
            return {
                'school_id': school_id,
                'school_name': school_name,
                'success': False,
                'error': str(exc),
            }
        logger.info('Provisioned login %s for school %s', username, school_id)
        return {
            'school_id': school_id,
            'school_name': school_name,
            'success': True,
            'username': username,
            'temporary_password': password,
        }
