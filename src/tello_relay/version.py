"""Version information for the Tello relay."""

APP_VERSION = "0.1.0"
