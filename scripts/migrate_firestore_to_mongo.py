#!/usr/bin/env python3
"""
Firestore => MongoDB bulk migration.

Collections, their sub-collections and target names come from the
migration plan (firestore_to_mongo/migration_plan.yaml by default).

Usage:
    python migrate_firestore_to_mongo.py [--plan PLAN.yaml] [--only users] [--batch-size 500]

Env required:
    MONGODB_URI
    MONGODB_DB
    One of the Firebase service-account options:
      - FIREBASE_SERVICE_ACCOUNT_KEY_BASE64
      - FIREBASE_CREDENTIALS_FILE
      - FIREBASE_SERVICE_ACCOUNT_KEY
      - FIREBASE_PROJECT_ID + FIREBASE_CLIENT_EMAIL + FIREBASE_PRIVATE_KEY
"""

import sys

from firestore_to_mongo.cli import migrate_main

if __name__ == "__main__":
    sys.exit(migrate_main())
