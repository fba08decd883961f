from pprint import pprint

from sync_runtime import get_db, COLL_OUTCOMES
from monitor_ws import COLL_PROCESSED

# Connect to the sync database (MONGO_URI / DB_NAME)
db = get_db()
outcomes_col = db[COLL_OUTCOMES]
processed_col = db[COLL_PROCESSED]

print("\n📜 --- SYNC OUTCOMES ---")
for doc in outcomes_col.find().sort("at", -1):
    pprint(doc)

print("\n📜 --- PROCESSED TXS COLLECTION ---")
for doc in processed_col.find():
    pprint(doc)
