# Data models package
