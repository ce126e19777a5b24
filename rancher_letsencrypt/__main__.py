"""Allow running as `python -m rancher_letsencrypt`."""

from rancher_letsencrypt.main import main

main()
