"""
Script to create the MongoDB indexes the engine relies on.

This script:
- Creates unique indexes for flows, flow versions, field mappings, sessions and the dedup ledger
- Creates the partial unique index allowing one active session per conversation
- Safe to run multiple times (idempotent)

The service also runs this on startup; use the script before the first deploy
or after restoring a database.
"""

import asyncio
import sys
import os

# Add src directory to path to import modules
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, 'src')
sys.path.insert(0, src_dir)
sys.path.insert(0, project_root)

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB


async def create_indexes():
    """
    Create all indexes and print the resulting index names per collection.
    """
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

    try:
        log_util.info(
            service_name="CreateIndexes",
            message="Creating indexes..."
        )
        await flow_db.ensure_indexes()

        client_data = flow_db._get_client_for_current_loop()
        print("\n" + "=" * 60)
        print("INDEX SUMMARY")
        print("=" * 60)
        for name, collection in client_data['collections'].items():
            indexes = await collection.index_information()
            print(f"  {name}: {', '.join(sorted(indexes.keys()))}")
        print("=" * 60)
        print("\n✅ Indexes created successfully!")

    except Exception as e:
        log_util.error(
            service_name="CreateIndexes",
            message=f"Fatal error while creating indexes: {str(e)}"
        )
        print(f"\n❌ Fatal error: {str(e)}")
        import traceback
        traceback.print_exc()
        raise
    finally:
        flow_db.close()


if __name__ == "__main__":
    asyncio.run(create_indexes())
