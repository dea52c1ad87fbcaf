"""Group registration engine policy.

Durations are configured in minutes or hours through the environment.
"""

from datetime import timedelta

from decouple import Choices, config

# Secret used to derive claim tokens from invite ids. Empty means "derive from SECRET_KEY".
REGISTRATION_TOKEN_SECRET = config("REGISTRATION_TOKEN_SECRET", default="")

# How long a freshly reserved hold (and its invite) stays pending before the sweep releases it.
INVITE_HOLD_TTL = timedelta(hours=config("INVITE_HOLD_TTL_HOURS", default=72, cast=int))

# Completion deadline stamped on a hold once its invite is claimed. Longer than INVITE_HOLD_TTL;
# release_lapsed_claims frees the seat once it passes.
CLAIMED_HOLD_TTL = timedelta(hours=config("CLAIMED_HOLD_TTL_HOURS", default=168, cast=int))

# extend_hold policy: "compound" extends from the later of now and the current deadline,
# "reset" extends from now.
HOLD_EXTENSION = timedelta(hours=config("HOLD_EXTENSION_HOURS", default=24, cast=int))
HOLD_EXTENSION_MODE = config("HOLD_EXTENSION_MODE", default="compound", cast=Choices(["compound", "reset"]))

GROUP_UPLOAD_MAX_ROWS = config("GROUP_UPLOAD_MAX_ROWS", default=250, cast=int)
GROUP_UPLOAD_RESERVE_CHUNK_SIZE = config("GROUP_UPLOAD_RESERVE_CHUNK_SIZE", default=25, cast=int)
GROUP_UPLOAD_INVITE_SEND_CHUNK_SIZE = config("GROUP_UPLOAD_INVITE_SEND_CHUNK_SIZE", default=10, cast=int)

INVITE_MAX_SEND_COUNT = config("INVITE_MAX_SEND_COUNT", default=5, cast=int)
INVITE_RESEND_COOLDOWN = timedelta(minutes=config("INVITE_RESEND_COOLDOWN_MINUTES", default=10, cast=int))

EXPIRY_SWEEP_BATCH_SIZE = config("EXPIRY_SWEEP_BATCH_SIZE", default=500, cast=int)

# Release during cancellation is retried this many times before the operation fails.
CAPACITY_RELEASE_ATTEMPTS = config("CAPACITY_RELEASE_ATTEMPTS", default=3, cast=int)

# Dotted path of the notification collaborator used to deliver invites.
REGISTRATION_INVITE_NOTIFIER = config(
    "REGISTRATION_INVITE_NOTIFIER", default="registrations.service.notifications.EmailInviteNotifier"
)
