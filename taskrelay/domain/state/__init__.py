# State = everything the presentation layer and tools may read or write
# outside of a task's own history, split into visibility classes:

# +---------------------+
# |     ephemeral       |   (memory only, optional TTL)
# |---------------------|
# |  durable_workspace  |   (persisted per session: task_history, tool data)
# |---------------------|
# |   durable_global    |   (persisted across sessions)
# |---------------------|
# |       secret        |   (never broadcast, never read over RPC)
# +---------------------+
