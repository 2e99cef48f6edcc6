"""
Core modules for cloud-quota.

This package contains the usage types, quota tariffs, activation rules,
rating arithmetic, aggregation and quoting.
"""
