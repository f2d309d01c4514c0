"""Infrastructure modules for FundX (paths, state store, locking, alerting, metrics)"""
