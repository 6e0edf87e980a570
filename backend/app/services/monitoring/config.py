"""Monitoring module constants: channel names, Redis keys, message templates.

Pure constants, no imports from the rest of the app.
"""

# Redis PubSub channel (module only PUBLISHES; dashboards / WS bridge listen)
REDIS_CHANNEL_TRANSITIONS = "monitoring:transitions"

# Redis keys
REDIS_SWEEP_LOCK = "monitoring:sweep:lock"
REDIS_DEVICE_PREFIX = "registry:device:"

# Vendor deviceType of presence sensors; the vendor webhook also reports other devices
MOTION_DEVICE_TYPE = "WoPresence"

# Transition labels used in IngestResult / published payloads
TRANSITION_OPENED = "opened"
TRANSITION_CHECK_IN = "check_in"
TRANSITION_ESCALATED = "escalated"
TRANSITION_RESOLVED = "resolved"

# Message templates
CHECK_IN_MESSAGE = (
    "Hi {name}, this is CareWatch. We haven't noticed any movement in the "
    "{location} for a little while. Are you okay? Please reply to this "
    "message to let us know."
)
ESCALATION_MESSAGE = (
    "URGENT: {patient} has not responded to a check-in {minutes} minutes "
    "after inactivity was detected in the {location}. Please check on them "
    "right away and acknowledge this alert."
)
ALERT_MESSAGE = (
    "No response to check-in {minutes} minutes after inactivity was "
    "detected by sensor {device}."
)

DEFAULT_LOCATION = "home"
DEFAULT_PATIENT_NAME = "there"
