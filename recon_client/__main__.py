import sys

from recon_client.main import main

sys.exit(main())
