"""SQLite storage for endpoints and subscriptions, with schema migrations."""