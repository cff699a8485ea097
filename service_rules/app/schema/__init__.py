"""
Schema package for the Rules Service.

Resolves property paths within fact schemas to their declared types and
builds facts from schema defaults.
"""
