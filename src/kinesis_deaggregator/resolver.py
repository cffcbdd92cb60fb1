# src/kinesis_deaggregator/resolver.py

"""Resolves the key table indices carried by a sub-record."""

from .decoder import AggregateBody, SubRecord
from .exceptions import IndexOutOfRangeError


def resolve(sub_record: SubRecord, body: AggregateBody) -> tuple[str, str | None]:
    """
    Returns ``(partition_key, explicit_hash_key)`` for *sub_record*.

    The explicit hash key is ``None`` when the sub-record carries no index.
    Raises ``IndexOutOfRangeError`` for an index beyond either table.
    """
    pk_table = body.partition_key_table
    if sub_record.partition_key_index >= len(pk_table):
        raise IndexOutOfRangeError(
            table="partition_key_table",
            index=sub_record.partition_key_index,
            table_size=len(pk_table),
        )

    explicit_hash_key = None
    if sub_record.explicit_hash_key_index is not None:
        ehk_table = body.explicit_hash_key_table
        if sub_record.explicit_hash_key_index >= len(ehk_table):
            raise IndexOutOfRangeError(
                table="explicit_hash_key_table",
                index=sub_record.explicit_hash_key_index,
                table_size=len(ehk_table),
            )
        explicit_hash_key = ehk_table[sub_record.explicit_hash_key_index]

    return pk_table[sub_record.partition_key_index], explicit_hash_key
