from .grades import grade_entry
from .bulletins import (
    bulletin_data, bulletin_create, bulletin_action, bulk_action, batch_status,
    bulletin_verify,
)
