"""Schema v2 - Add audit trail and integrity issue reporting.

This version adds:
- inventory_audit_log: one row per card/escrow state transition
- inventory_integrity_issues: findings written by integrity check runs
"""

from .v1 import CARD_INSTANCES, ESCROW_TRANSACTIONS, SELLER_TRUST_SCORES

INVENTORY_AUDIT_LOG = {
    'name': 'inventory_audit_log',
    'columns': [
        {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
        {'name': 'card_instance_id', 'type': 'UUID'},
        {'name': 'escrow_id', 'type': 'UUID'},
        {'name': 'order_id', 'type': 'UUID'},
        {'name': 'action', 'type': 'TEXT', 'nullable': False},
        {'name': 'from_status', 'type': 'TEXT'},
        {'name': 'to_status', 'type': 'TEXT'},
        {'name': 'actor_user_id', 'type': 'UUID'},
        {'name': 'actor_type', 'type': 'TEXT', 'nullable': False, 'default': "'system'"},
        {'name': 'reason', 'type': 'TEXT'},
        {'name': 'metadata', 'type': 'JSONB'},
        {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
    ],
    'indexes': [
        {'name': 'idx_audit_card_instance', 'columns': ['card_instance_id']},
        {'name': 'idx_audit_created', 'columns': ['created_at']}
    ]
}

INVENTORY_INTEGRITY_ISSUES = {
    'name': 'inventory_integrity_issues',
    'columns': [
        {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
        {'name': 'issue_type', 'type': 'TEXT', 'nullable': False},
        {'name': 'severity', 'type': 'TEXT', 'nullable': False, 'default': "'warning'"},
        {'name': 'issue_description', 'type': 'TEXT', 'nullable': False},
        {'name': 'card_instance_id', 'type': 'UUID'},
        {'name': 'escrow_id', 'type': 'UUID'},
        {'name': 'detected_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
        {'name': 'resolved_at', 'type': 'TIMESTAMPTZ'}
    ],
    'indexes': [
        {'name': 'idx_integrity_unresolved', 'columns': ['detected_at'], 'where': 'resolved_at IS NULL'}
    ]
}

schema = {
    'version': 2,
    'tables': [
        CARD_INSTANCES,
        ESCROW_TRANSACTIONS,
        SELLER_TRUST_SCORES,
        INVENTORY_AUDIT_LOG,
        INVENTORY_INTEGRITY_ISSUES
    ],
    'migrations': [
        '''
        CREATE TABLE IF NOT EXISTS inventory_audit_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            card_instance_id UUID,
            escrow_id UUID,
            order_id UUID,
            action TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT,
            actor_user_id UUID,
            actor_type TEXT NOT NULL DEFAULT 'system',
            reason TEXT,
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        ''',
        'CREATE INDEX IF NOT EXISTS idx_audit_card_instance ON inventory_audit_log(card_instance_id);',
        'CREATE INDEX IF NOT EXISTS idx_audit_created ON inventory_audit_log(created_at);',
        '''
        CREATE TABLE IF NOT EXISTS inventory_integrity_issues (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            issue_type TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'warning',
            issue_description TEXT NOT NULL,
            card_instance_id UUID,
            escrow_id UUID,
            detected_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            resolved_at TIMESTAMPTZ
        );
        ''',
        '''
        CREATE INDEX IF NOT EXISTS idx_integrity_unresolved
        ON inventory_integrity_issues(detected_at) WHERE resolved_at IS NULL;
        '''
    ]
}
