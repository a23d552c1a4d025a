"""Remote file system and terminal sessions through a relay deployed over ssh."""
