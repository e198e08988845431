"""
Issue reports: bugs, data problems and access requests raised by any signed-in
user and worked by platform admins.
"""
