#!/usr/bin/env python3
"""
One-time migration: copy users keyed by uid to records keyed by email.

Usage:
    python rekey_users_by_email.py                         # dry run
    python rekey_users_by_email.py --apply                 # write copies
    python rekey_users_by_email.py --apply --delete-old    # write copies, remove uid records
    python rekey_users_by_email.py --store firestore       # re-key users/{uid} in Firestore instead
"""

import sys

from firestore_to_mongo.cli import rekey_main

if __name__ == "__main__":
    sys.exit(rekey_main())
