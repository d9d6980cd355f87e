"""Clients for the services Concord consumes: presence and device actuation."""
