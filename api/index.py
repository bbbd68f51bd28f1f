import logging
import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rewards.api import create_app
from rewards.config import RewardsConfig

config = RewardsConfig.from_env()
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(config=config, root_path="/api")

handler = Mangum(app)
