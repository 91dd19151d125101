"""
Core building blocks shared by every layer: exceptions, logging,
middleware and caller identity.
"""
