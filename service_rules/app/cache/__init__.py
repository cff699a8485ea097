"""
Cache package for the Rules Service.

Holds compiled rules per rule-set, keyed by a hash of each rule's model
and the schema versions it was compiled against.
"""
