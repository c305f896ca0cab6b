"""
Storage targets for publishing backups.

Targets are named disks configured in STORAGE_DISKS. Each disk has a driver:
- local: copy into another directory (e.g. a mounted NAS share)
- s3: upload to an S3 bucket
- sftp: upload to a remote host over SFTP

The artifact in the backup directory is always left in place.
"""

import logging
import os
import posixpath
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
import paramiko
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from .errors import PublishFailed


logger = logging.getLogger(__name__)

DEFAULT_PUBLISH_TIMEOUT = 300

# Multipart upload above 100MB, in 10MB parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class LocalStorage:
    """
    Store backups in a directory on the local filesystem.
    """

    def __init__(self, root: str):
        """
        Initialize local storage handler.

        Args:
            root: Directory that receives the backups
        """
        self.root = Path(root).expanduser()

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage directory {self.root}: {e}")

    def put(self, filename: str, source_path: str) -> str:
        """
        Copy a backup into the storage directory.

        Returns:
            Full path of the stored file

        Raises:
            StorageError: If the copy fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        dest_path = self.root / filename

        try:
            shutil.copy2(source_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store {filename}: {e}")

        return str(dest_path)

    def delete(self, filename: str):
        full_path = self.root / filename

        try:
            if full_path.exists():
                full_path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete {full_path}: {e}")

    def list_files(self) -> List[Dict[str, Any]]:
        """
        List stored backups.

        Returns:
            List of dicts with 'name', 'modified' and 'size' keys
        """
        files = []
        for file_path in self.root.iterdir():
            if file_path.is_file():
                stat = file_path.stat()
                files.append({
                    'name': file_path.name,
                    'modified': datetime.fromtimestamp(stat.st_mtime),
                    'size': stat.st_size
                })
        return files

    def test_connection(self) -> bool:
        if not os.access(self.root, os.W_OK):
            raise StorageError(f"Storage directory is not writable: {self.root}")
        return True


class S3Storage:
    """
    Upload backups to an S3 bucket.

    Objects are stored as {prefix}/{filename}.
    """

    def __init__(self, bucket_name: str, region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 prefix: str = '', timeout: float = DEFAULT_PUBLISH_TIMEOUT,
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (falls back to the boto3 credential chain)
            secret_key: AWS secret access key
            prefix: Key prefix for uploaded backups
            timeout: Connect/read timeout in seconds
            endpoint_url: Custom endpoint for S3 compatible services
        """
        if not bucket_name:
            raise StorageError("S3 bucket name is not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = (prefix or '').strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={'max_attempts': 3}
                )
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, filename: str) -> str:
        return f"{self.prefix}/{filename}" if self.prefix else filename

    def put(self, filename: str, source_path: str) -> str:
        """
        Upload a backup to S3.

        Returns:
            S3 key of the uploaded object

        Raises:
            StorageError: If the upload fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        s3_key = self._key(filename)

        try:
            file_size = os.path.getsize(source_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(source_path, s3_key)
            else:
                with open(source_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=f)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _multipart_upload(self, source_path: str, s3_key: str):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']

        parts = []

        try:
            with open(source_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def delete(self, filename: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(filename))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def list_files(self) -> List[Dict[str, Any]]:
        """
        List backups under the prefix.

        Returns:
            List of dicts with 'name', 'modified' and 'size' keys
        """
        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            prefix = f"{self.prefix}/" if self.prefix else ''

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    files.append({
                        'name': obj['Key'][len(prefix):],
                        'modified': obj['LastModified'],
                        'size': obj['Size']
                    })

            return files

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If the bucket cannot be reached
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class SFTPStorage:
    """
    Upload backups to a remote directory over SFTP.
    """

    def __init__(self, host: str, username: str, path: str = '.', port: int = 22,
                 password: Optional[str] = None, private_key: Optional[str] = None,
                 timeout: float = DEFAULT_PUBLISH_TIMEOUT):
        """
        Initialize SFTP storage handler.

        Args:
            host: SSH hostname or IP
            username: SSH username
            path: Remote directory for backups
            port: SSH port (default 22)
            password: SSH password (optional if using key)
            private_key: Path to private key file (optional)
            timeout: Connection and channel timeout in seconds
        """
        if not host:
            raise StorageError("SFTP host is not configured")

        self.host = host
        self.port = int(port or 22)
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.path = path or '.'
        self.timeout = timeout

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.timeout,
            'banner_timeout': self.timeout,
            'auth_timeout': self.timeout
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise StorageError("Either password or private_key must be provided")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            self.sftp_client.get_channel().settimeout(self.timeout)
        except paramiko.AuthenticationException as e:
            self.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def _remote_path(self, filename: str) -> str:
        return posixpath.join(self.path, filename)

    def put(self, filename: str, source_path: str) -> str:
        """
        Upload a backup over SFTP.

        Returns:
            Remote path of the uploaded file

        Raises:
            StorageError: If the upload fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        remote_path = self._remote_path(filename)
        self._connect()

        try:
            self.sftp_client.put(source_path, remote_path)
            return remote_path
        except PermissionError:
            raise StorageError(f"Permission denied writing remote file: {remote_path}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to upload {filename} to {self.host}: {e}")
        finally:
            self.close()

    def delete(self, filename: str):
        self._connect()
        try:
            self.sftp_client.remove(self._remote_path(filename))
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to delete {filename} on {self.host}: {e}")
        finally:
            self.close()

    def list_files(self) -> List[Dict[str, Any]]:
        self._connect()
        try:
            return [
                {
                    'name': item.filename,
                    'modified': datetime.fromtimestamp(item.st_mtime),
                    'size': item.st_size
                }
                for item in self.sftp_client.listdir_attr(self.path)
                if not item.st_mode & 0o040000
            ]
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to list {self.path} on {self.host}: {e}")
        finally:
            self.close()

    def test_connection(self) -> bool:
        self._connect()
        try:
            self.sftp_client.stat(self.path)
            return True
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Remote path not accessible: {self.path}: {e}")
        finally:
            self.close()


STORAGE_DRIVERS = {
    'local': LocalStorage,
    's3': S3Storage,
    'sftp': SFTPStorage,
}


def create_storage(name: str, disks: Dict[str, Dict[str, Any]]):
    """
    Factory function to create the storage handler for a named disk.

    Args:
        name: Disk name, e.g. 's3'
        disks: Mapping of disk name to settings; each has a 'driver' key

    Returns:
        LocalStorage, S3Storage or SFTPStorage instance

    Raises:
        PublishFailed: If the disk is not configured or cannot be initialized
    """
    settings = dict((disks or {}).get(name) or {})
    if not settings:
        raise PublishFailed(name, f"Storage disk not configured. Configured disks: {sorted((disks or {}).keys())}")

    driver = settings.pop('driver', name)
    if driver not in STORAGE_DRIVERS:
        raise PublishFailed(name, f"Invalid storage driver: {driver}. Valid options: {list(STORAGE_DRIVERS.keys())}")

    try:
        return STORAGE_DRIVERS[driver](**settings)
    except StorageError as e:
        raise PublishFailed(name, e)
    except TypeError as e:
        raise PublishFailed(name, f"Invalid settings for {driver} storage: {e}")


def publish(path: str, target: str, disks: Optional[Dict[str, Dict[str, Any]]] = None) -> Optional[str]:
    """
    Copy an artifact to a named storage target.

    The 'local' target is a no-op: the artifact already lives in the backup
    directory.

    Args:
        path: Local artifact path
        target: Disk name
        disks: Configured disks

    Returns:
        Remote key/path of the stored copy, or None for 'local'

    Raises:
        PublishFailed: If the upload fails
    """
    if not target or target == 'local':
        return None

    storage = create_storage(target, disks)
    filename = os.path.basename(path)

    try:
        location = storage.put(filename, path)
    except StorageError as e:
        raise PublishFailed(target, e)

    logger.info(f"Published {filename} to {target} as {location}")
    return location
