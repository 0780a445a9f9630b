"""
Session lifecycle: the Active/IdleWarning/Expired/Terminated state machine and its timers.
"""
