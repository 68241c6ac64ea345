from functools import wraps

from flask import g, jsonify

from errors import ValidationError
from products import normalize_account_id


def require_account_id(f):
    """Decorator to require a usable account_id path segment.

    The normalized id is stored on ``g.account_id`` and passed on to the view.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            account_id = normalize_account_id(kwargs.get('account_id'))
        except ValidationError as e:
            return jsonify({
                'status': 'error',
                'error': str(e),
                'code': 422
            }), 422

        g.account_id = account_id
        kwargs['account_id'] = account_id
        return f(*args, **kwargs)
    return decorated_function
