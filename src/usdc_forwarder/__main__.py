"""Allow `python -m usdc_forwarder`."""

from usdc_forwarder.main import main

main()
