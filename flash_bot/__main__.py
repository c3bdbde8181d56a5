import sys

from flash_bot.main import main

sys.exit(main())
