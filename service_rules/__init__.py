"""
Rules Service for the Rule Engine Platform.
"""
