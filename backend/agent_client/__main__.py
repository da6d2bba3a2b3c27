import sys

from agent_client.main import main

sys.exit(main())
