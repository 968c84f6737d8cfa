import json
import os
import threading
import time
from dataclasses import dataclass
from functools import wraps

import bcrypt
from flask import jsonify, session

import config

_users = None
_users_lock = threading.Lock()


@dataclass
class Identity:
    uid: str
    email: str
    role: str = 'user'

    @property
    def is_admin(self):
        return self.role == 'admin'

    def can_modify(self, owner_uid):
        """Owner match or admin"""
        return self.is_admin or (owner_uid is not None and owner_uid == self.uid)


def load_users(force=False):
    global _users
    with _users_lock:
        if _users is None or force:
            if os.path.exists(config.USERS_FILE):
                with open(config.USERS_FILE) as f:
                    _users = json.load(f)
            else:
                print(f"⚠️ {config.USERS_FILE} not found - run create_user.py to add accounts")
                _users = {}
        return _users


def check_login(email, password):
    user = load_users().get((email or '').strip().lower())
    if not user or not password:
        return None

    # Stored hash is a str in users.json, bcrypt wants bytes on both sides
    stored_hash = user['password'].encode('utf-8')
    if not bcrypt.checkpw(password.encode('utf-8'), stored_hash):
        return None
    return Identity(uid=user['uid'], email=email.strip().lower(), role=user.get('role', 'user'))


def login_user(identity):
    session.clear()
    session.permanent = True
    session['uid'] = identity.uid
    session['email'] = identity.email
    session['role'] = identity.role
    session['login_time'] = int(time.time())


def logout_user():
    session.clear()


def current_identity():
    uid = session.get('uid')
    if not uid:
        return None
    return Identity(uid=uid, email=session.get('email', ''), role=session.get('role', 'user'))


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if current_identity() is None:
            return jsonify({'success': False, 'error': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        identity = current_identity()
        if identity is None:
            return jsonify({'success': False, 'error': 'Authentication required'}), 401
        if not identity.is_admin:
            return jsonify({'success': False, 'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated
