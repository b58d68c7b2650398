"""Pulumi program provisioning the archive destination (bucket + upload-only IAM user)"""

import pulumi
import pulumi_aws as aws
import json

config = pulumi.Config()
glacier_after_days = config.get_int("glacierAfterDays") or 30

# Snapshots land here as {snapshot}/{owner}/{name}-{snapshot}.tar.gz
bucket = aws.s3.BucketV2(
  "archive-bucket",
  bucket_prefix="github-archive-",
  force_destroy=False,
)

aws.s3.BucketPublicAccessBlock(
  "archive-bucket-public-access",
  bucket=bucket.id,
  block_public_acls=True,
  block_public_policy=True,
  ignore_public_acls=True,
  restrict_public_buckets=True,
)

aws.s3.BucketLifecycleConfigurationV2(
  "archive-bucket-lifecycle",
  bucket=bucket.id,
  rules=[aws.s3.BucketLifecycleConfigurationV2RuleArgs(
    id="snapshots-to-glacier",
    status="Enabled",
    filter=aws.s3.BucketLifecycleConfigurationV2RuleFilterArgs(prefix=""),
    transitions=[aws.s3.BucketLifecycleConfigurationV2RuleTransitionArgs(
      days=glacier_after_days,
      storage_class="GLACIER",
    )],
    abort_incomplete_multipart_upload=aws.s3.BucketLifecycleConfigurationV2RuleAbortIncompleteMultipartUploadArgs(
      days_after_initiation=7,
    ),
  )],
)

# The archiver only ever writes; it never needs to read or list snapshots
uploader = aws.iam.User("archive-uploader")

aws.iam.UserPolicy(
  "archive-uploader-policy",
  user=uploader.name,
  policy=bucket.arn.apply(
    lambda arn: json.dumps({
      "Version": "2012-10-17",
      "Statement": [{
        "Sid": "AllowSnapshotUploads",
        "Effect": "Allow",
        "Action": [
          "s3:PutObject",
          "s3:AbortMultipartUpload",
          "s3:ListMultipartUploadParts",
        ],
        "Resource": f"{arn}/*",
      }]
    })
  ),
)

access_key = aws.iam.AccessKey("archive-uploader-key", user=uploader.name)

pulumi.export("bucket_name", bucket.id)
pulumi.export("aws_access_key_id", access_key.id)
pulumi.export("aws_secret_access_key", pulumi.Output.secret(access_key.secret))
