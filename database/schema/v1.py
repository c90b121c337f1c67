"""Schema v1 - Initial inventory escrow schema.

This version includes tables for:
- Card instances (individually tracked physical cards)
- Escrow transactions (locks held by orders against card instances)
- Seller trust scores (maintained by the trust scoring service)

A card instance can have at most one escrow row in 'locked' status. This is
enforced by the partial unique index idx_escrow_one_active_lock so that two
concurrent lock attempts resolve in the database rather than in application code.
"""

CARD_INSTANCES = {
    'name': 'card_instances',
    'columns': [
        {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
        {'name': 'owner_user_id', 'type': 'UUID', 'nullable': False},
        {'name': 'title', 'type': 'TEXT', 'nullable': False},
        {'name': 'category', 'type': 'TEXT'},
        {'name': 'series', 'type': 'TEXT'},
        {'name': 'grade', 'type': 'TEXT'},
        {'name': 'current_value', 'type': 'DECIMAL', 'nullable': False, 'default': '0'},
        {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'in_vault'"},
        {'name': 'is_active', 'type': 'BOOLEAN', 'nullable': False, 'default': 'true'},
        {'name': 'locked_at', 'type': 'TIMESTAMPTZ'},
        {'name': 'locked_by_order_id', 'type': 'UUID'},
        {'name': 'lock_reason', 'type': 'TEXT'},
        {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
        {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
    ],
    'checks': [
        {
            'name': 'chk_card_instances_status',
            'expression': (
                "status IN ('in_vault', 'listed_for_sale', 'reserved_checkout', "
                "'sold_pending', 'in_verification', 'completed', 'disputed', 'withdrawn')"
            )
        }
    ],
    'indexes': [
        {'name': 'idx_card_instances_owner', 'columns': ['owner_user_id']},
        {'name': 'idx_card_instances_status', 'columns': ['status']},
        {'name': 'idx_card_instances_locked', 'columns': ['locked_at'], 'where': 'locked_at IS NOT NULL'}
    ]
}

ESCROW_TRANSACTIONS = {
    'name': 'escrow_transactions',
    'columns': [
        {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
        {'name': 'card_instance_id', 'type': 'UUID', 'nullable': False},
        {'name': 'order_id', 'type': 'UUID', 'nullable': False},
        {'name': 'seller_id', 'type': 'UUID'},
        {'name': 'buyer_id', 'type': 'UUID'},
        {'name': 'sale_amount', 'type': 'DECIMAL'},
        {'name': 'sale_lane', 'type': 'TEXT'},
        {'name': 'requires_verification', 'type': 'BOOLEAN', 'nullable': False, 'default': 'true'},
        {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'locked'"},
        {'name': 'reason', 'type': 'TEXT'},
        {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
        {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
        {'name': 'resolved_at', 'type': 'TIMESTAMPTZ'}
    ],
    'checks': [
        {
            'name': 'chk_escrow_status',
            'expression': "status IN ('locked', 'released', 'unlocked', 'completed')"
        },
        {
            'name': 'chk_escrow_lane',
            'expression': "sale_lane IS NULL OR sale_lane IN ('instant', 'escrow_verification')"
        }
    ],
    'foreign_keys': [
        {'columns': ['card_instance_id'], 'references': 'card_instances(id)'}
    ],
    'indexes': [
        {
            'name': 'idx_escrow_one_active_lock',
            'columns': ['card_instance_id'],
            'unique': True,
            'where': "status = 'locked'"
        },
        {'name': 'idx_escrow_order', 'columns': ['order_id']},
        {'name': 'idx_escrow_status_created', 'columns': ['status', 'created_at']}
    ]
}

SELLER_TRUST_SCORES = {
    'name': 'seller_trust_scores',
    'columns': [
        {'name': 'seller_id', 'type': 'UUID', 'primary_key': True},
        {'name': 'overall_score', 'type': 'DECIMAL', 'nullable': False, 'default': '0'},
        {'name': 'tier', 'type': 'TEXT', 'nullable': False, 'default': "'new'"},
        {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
    ]
}

schema = {
    'version': 1,
    'tables': [
        CARD_INSTANCES,
        ESCROW_TRANSACTIONS,
        SELLER_TRUST_SCORES
    ],
    'migrations': []
}
