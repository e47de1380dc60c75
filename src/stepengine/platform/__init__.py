"""
Adapters over the host: processes, secrets and the local file system. Each comes as a
Protocol the controllers depend on, plus the implementation used outside of tests.
"""
