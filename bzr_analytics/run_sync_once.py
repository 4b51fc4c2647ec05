import logging
from bzr_analytics.main import IngestionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('latest_sync.log'),
        logging.StreamHandler()
    ]
)

if __name__ == "__main__":
    print("Starting one-off ingestion pass...")
    service = IngestionService()
    service.refresh_credentials()
    service.run_once()
    print("Ingestion pass complete.")
