# Local inference session engine
#
# This package owns the single loaded model and serves one generation at a
# time against its conversational session.
#
# Key components:
#   - adapters/       Model runtime adapters (the model handle)
#   - session.py      Conversation-bound KV-cache session
#   - chat_engine.py  Lifecycle, generation slot, sync + streaming generation
#   - registry.py     Adapter registry and on-disk model files
#   - types.py        Config and result types
