"""
Contracts of the external provisioning and reserved-session services, and a simulator of both.
"""
