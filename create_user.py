#!/usr/bin/env python3
"""
Account manager for ScribeStore users (users.json)
Usage: python create_user.py
"""

import json
import os
import uuid

import bcrypt

import config

ROLES = ('admin', 'user')


def hash_password(password):
    """Generate bcrypt hash for password"""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def load_users(path=None):
    path = path or config.USERS_FILE
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            print(f"⚠️  Error reading {path}, starting with empty user list")
            return {}
    return {}


def save_users(users, path=None):
    path = path or config.USERS_FILE
    try:
        with open(path, 'w') as f:
            json.dump(users, f, indent=2)
        return True
    except IOError:
        print(f"❌ Error saving {path}")
        return False


def create_account(users, email, password, role='user'):
    """Add an account to the users mapping; returns the new uid"""
    email = (email or '').strip().lower()
    if not email or '@' not in email:
        raise ValueError('A valid email address is required')
    if email in users:
        raise ValueError(f"User '{email}' already exists")
    if not password:
        raise ValueError('Password cannot be empty')
    if role not in ROLES:
        raise ValueError(f"Invalid role. Must be one of: {', '.join(ROLES)}")

    uid = uuid.uuid4().hex
    users[email] = {'uid': uid, 'password': hash_password(password), 'role': role}
    return uid


def add_user(users):
    email = input("Enter email: ").strip()
    password = input("Enter password: ").strip()

    print("\nRole options:")
    print("  admin - Sees every file, sets transcription status, uploads documents")
    print("  user  - Uploads media and manages their own files and folders")
    role = input("Enter role (admin/user): ").strip().lower()

    try:
        create_account(users, email, password, role)
    except ValueError as e:
        print(f"❌ {e}")
        return False

    if save_users(users):
        print(f"✅ User '{email.lower()}' added with role '{role}'")
        return True
    return False


def update_user_password(users):
    email = input("Enter email to update: ").strip().lower()
    if email not in users:
        print(f"❌ User '{email}' not found")
        return False

    password = input("Enter new password: ").strip()
    if not password:
        print("❌ Password cannot be empty")
        return False

    users[email]['password'] = hash_password(password)
    if save_users(users):
        print(f"✅ Password updated for '{email}'")
        return True
    return False


def list_users(users):
    if not users:
        print("❌ No users exist")
        return

    print("\n📋 Current Users:")
    print("-" * 40)
    for email, data in users.items():
        print(f"👤 {email} ({data.get('role', 'unknown')}) uid={data.get('uid')}")


def delete_user(users):
    email = input("Enter email to delete: ").strip().lower()
    if email not in users:
        print(f"❌ User '{email}' not found")
        return False

    confirm = input(f"Are you sure you want to delete '{email}'? (yes/no): ").strip().lower()
    if confirm not in ['yes', 'y']:
        print("❌ Deletion cancelled")
        return False

    del users[email]
    if save_users(users):
        print(f"✅ User '{email}' deleted")
        return True
    return False


def main():
    print("🔐 ScribeStore User Management")
    print("=" * 40)

    while True:
        users = load_users()

        print("\nOptions:")
        print("1. Add new user")
        print("2. Update existing user password")
        print("3. List all users")
        print("4. Delete user")
        print("5. Exit")

        choice = input("\nSelect option (1-5): ").strip()

        if choice == '1':
            add_user(users)
        elif choice == '2':
            update_user_password(users)
        elif choice == '3':
            list_users(users)
        elif choice == '4':
            delete_user(users)
        elif choice == '5':
            print("👋 Goodbye!")
            break
        else:
            print("❌ Invalid option. Please select 1-5")


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print("\n\n👋 Goodbye!")
