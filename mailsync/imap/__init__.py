"""IMAP protocol layer: session, response parsing and folder roles."""
