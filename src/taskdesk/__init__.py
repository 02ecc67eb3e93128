"""
Taskdesk - relational-style data access over an Appwrite document store.

Components:
- db: query builder, gateway, access guard, sanitizer, storage
- realtime: change channels with push transport and polling fallback
- auth: session bridge over the Appwrite account API
- scheduler: recurring tasks, approval escalation, notification digest
"""

__version__ = "1.0.0"
