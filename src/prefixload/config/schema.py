"""Configuration schema for the YAML config file."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MIB = 1024 * 1024

# S3 rejects non-final multipart parts smaller than this
MIN_PART_SIZE = 5 * MIB
DEFAULT_PART_SIZE = 15 * MIB


class PrefixRule(BaseModel):
    """Routes local files whose name starts with ``prefix_file`` into ``cloud_dir``."""

    model_config = ConfigDict(frozen=True)

    prefix_file: str = Field(..., description="Local file name prefix")
    cloud_dir: str = Field(default="", description="Destination directory inside the bucket")

    @field_validator('prefix_file')
    @classmethod
    def validate_prefix(cls, v):
        if not v:
            raise ValueError("prefix_file must not be empty")
        return v

    def remote_key(self, file_name: str) -> str:
        """Object key for ``file_name`` under this rule's directory."""
        directory = self.cloud_dir.strip("/")
        if not directory:
            return file_name
        return f"{directory}/{file_name}"


class PrefixloadConfig(BaseModel):
    """Root document of ``config.yml``."""

    endpoint: Optional[str] = Field(None, description="S3-compatible endpoint URL")
    bucket: str = Field(..., description="Bucket to upload into")
    region: Optional[str] = Field(None, description="Signing region (defaults to us-east-1)")
    force_path_style: bool = Field(default=False, description="Use path-style addressing")
    part_size: int = Field(default=DEFAULT_PART_SIZE, description="Multipart part size in bytes")
    local_directory_path: str = Field(..., description="Directory holding the files to upload")
    directory_struct: List[PrefixRule] = Field(default_factory=list, description="Prefix routing rules")

    @field_validator('bucket', 'local_directory_path')
    @classmethod
    def validate_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator('part_size')
    @classmethod
    def validate_part_size(cls, v):
        if v <= 0:
            raise ValueError("part_size must be a positive number of bytes")
        return v

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    def get_rule(self, prefix_file: str) -> Optional[PrefixRule]:
        """Return the rule for ``prefix_file`` if one is configured."""
        for rule in self.directory_struct:
            if rule.prefix_file == prefix_file:
                return rule
        return None
