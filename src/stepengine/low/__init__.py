"""
Low level value types and helpers with no dependency on the rest of the package.
"""
