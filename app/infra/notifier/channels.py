from uuid import UUID


def workspace_queue_channel(workspace_id: UUID) -> str:
    return f"workspace:{workspace_id}:queue"


def customer_channel(workspace_id: UUID, customer_id: UUID) -> str:
    return f"workspace:{workspace_id}:customer:{customer_id}"


def operator_channel(workspace_id: UUID, operator_id: UUID) -> str:
    return f"workspace:{workspace_id}:operator:{operator_id}"
