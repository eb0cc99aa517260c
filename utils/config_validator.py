def validate_config(config: dict):
    required_keys = [
        "VENUE",
        "SIGNALS",
        "CONFIRMATION",
        "EXECUTION",
        "MONITOR",
        "LIMITS",
        "CACHE",
        "DATABASE",
    ]

    missing = [k for k in required_keys if k not in config or not config[k]]
    if missing:
        raise ValueError(f"Missing required configuration keys: {missing}")

    venue = config["VENUE"]
    if not venue.get("api_key") or not venue.get("api_secret"):
        raise ValueError("VENUE_API_KEY and VENUE_API_SECRET must be set.")

    signals = config["SIGNALS"]
    if not 0 <= float(signals.get("min_confidence", 0)) <= 1:
        raise ValueError("SIGNAL_MIN_CONFIDENCE must be between 0 and 1.")
    if int(signals.get("batch_size", 0)) < 1:
        raise ValueError("SIGNAL_BATCH_SIZE must be at least 1.")

    intervals = {
        "SIGNAL_QUEUE_INTERVAL": signals.get("queue_interval"),
        "MONITOR_INTERVAL": config["MONITOR"].get("interval"),
        "EXEC_POLL_INTERVAL": config["EXECUTION"].get("poll_interval"),
        "CONFIRM_SWEEP_INTERVAL": config["CONFIRMATION"].get("expiry_sweep_interval"),
    }
    bad = [name for name, value in intervals.items() if value is None or float(value) <= 0]
    if bad:
        raise ValueError(f"Intervals must be positive: {bad}")

    limits = config["LIMITS"]
    if float(limits.get("min_order_value", 0)) > float(limits.get("max_position_value", 0)):
        raise ValueError("LIMIT_MIN_ORDER_VALUE cannot exceed LIMIT_MAX_POSITION_VALUE.")

    if config["CACHE"].get("backend") not in {"memory", "redis"}:
        raise TypeError("CACHE_BACKEND must be 'memory' or 'redis'.")
