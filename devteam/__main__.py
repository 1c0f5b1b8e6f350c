"""Allow `python -m devteam`."""

from devteam.daemon import main

main()
