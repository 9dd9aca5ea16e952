"""
Support Tickets Module
======================

Ticket ingestion from the support inbox and the in-app API, automated
canned responses and the open/closed lifecycle.
"""
