from . import accounts, auth, databases, domains, email, ssl, tasks
from .ws import register_websockets

BLUEPRINTS = (auth.bp, accounts.bp, domains.bp, ssl.bp, databases.bp, email.bp, tasks.bp)
API_PREFIX = '/api/v1'


def register_api(app):
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=API_PREFIX)
    register_websockets(app)
