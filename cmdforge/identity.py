"""
CMDFORGE identity constants.
"""

__codename__ = "CMDFORGE"
__version__ = "0.3.0"
__tagline__ = "Say it. Review it. Run it."

BANNER = r"""
  ___ __  __ ___  ___ ___  ___  ___ ___
 / __|  \/  |   \| __/ _ \| _ \/ __| __|
| (__| |\/| | |) | _| (_) |   / (_ | _|
 \___|_|  |_|___/|_| \___/|_|_\\___|___|
"""
