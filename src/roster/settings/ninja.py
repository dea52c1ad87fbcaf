from decouple import config

NINJA_EXTRA = {
    "THROTTLE_RATES": {
        "user": config("USER_THROTTLE_RATE", default="1000/day"),
        "anon": config("ANON_THROTTLE_RATE", default="250/day"),
    },
    "NUM_PROXIES": None,
}
