"""Models for the chunks app.

ChunkRecord - metadata about one stored chunk; the bytes live on the filesystem
under the store root at ``storage_path``.
"""
from tortoise import fields, models


class ChunkRecord(models.Model):
    # surrogate key assigned by the database
    id = fields.IntField(primary_key=True)
    # externally visible identifier; the unique constraint is the upload race arbiter
    name = fields.CharField(max_length=255, unique=True)
    storage_path = fields.CharField(max_length=1024)
    size = fields.BigIntField()
    content_type = fields.CharField(max_length=255, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        default_connection = "default"
        table = "chunks"

    def __str__(self):
        return self.name
