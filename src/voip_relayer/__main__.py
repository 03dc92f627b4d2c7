"""Allow running the relayer with `python -m voip_relayer`."""

from voip_relayer.main import main

main()
