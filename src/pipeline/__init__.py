"""
Run configuration and the command-line entry point of the delay model.
"""
