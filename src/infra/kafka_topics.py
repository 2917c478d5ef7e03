REGULARIZATION_EVENTS_TOPIC = "regularization_events"
RAW_DATA_CHANGES_TOPIC = "raw_data_changes"

TOPICS = {
    REGULARIZATION_EVENTS_TOPIC: {
        "partitions": 3,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
    RAW_DATA_CHANGES_TOPIC: {
        "partitions": 1,
        "replication_factor": 3,
        "retention_ms": 604800000,
    },
}
