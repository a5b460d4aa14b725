#!/usr/bin/env python

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning
import argparse
import collections
import dateutil.tz
import json
import logging
import os
import re
import sys
import tomllib
from datetime import datetime as dt
from getpass import getpass

# this is a Nexus docker registry manipulator, can do following:
# - list all images and their tags
# - show manifest, digest, last modified date of a tag
# - show total size of an image (shared layers counted once)
# - delete a tag
# - delete all except last N tags
#
# run
# nexus_cli.py -h
# to get more help
#
# important: deleting an asset only removes the tag, blobs are reclaimed by
# the "Docker - Delete unused manifests and images" and "Compact blob store"
# tasks on the Nexus side.


AppInfo = collections.namedtuple('AppInfo', ['name', 'usage', 'version', 'authors'])

APP = AppInfo(
    name="nexus-cli",
    usage="Manage Docker Private Registry on Nexus",
    version="1.0.3",
    authors=("Mohamed Labouardy <mohamed@labouardy.com>",
             "Alexandr Zaytsev <13rentgen@gmail.com>",
             "Paul Sladek <psladek@seekr.com>"))

__version__ = APP.version

CREDENTIALS_FILE = ".credentials"

CREDENTIALS_TEMPLATE = """# Nexus Credentials
nexus_host = "{host}"
nexus_username = "{username}"
nexus_password = "{password}"
nexus_repository = "{repository}"
"""

ACCEPT_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
ACCEPT_JSON = "application/json"

RFC1123_FORMAT = "%a, %d %b %Y %H:%M:%S GMT"


class NexusError(Exception):
    """Base exception for all nexus-cli errors."""


class ConfigurationError(NexusError):
    """Credential file is missing, unreadable or incomplete."""


class TransportError(NexusError):
    """Request never produced an HTTP response."""


class RegistryHTTPError(NexusError):
    """Registry answered with an unexpected status code."""

    def __init__(self, status_code, context=''):
        self.status_code = status_code
        self.context = context
        msg = "HTTP Code: {0}".format(status_code)
        if context:
            msg += ", {0}".format(context)
        super().__init__(msg)


class DecodeError(NexusError):
    """Response body is not the JSON document we expected."""


class DateParseError(NexusError):
    """last-modified header is missing or not RFC 1123."""


RegistryConfig = collections.namedtuple('RegistryConfig', ['host', 'username', 'password', 'repository'])


class LayerInfo(collections.namedtuple('LayerInfo', ['media_type', 'size', 'digest'])):

    @classmethod
    def from_json(cls, data):
        data = data or {}
        return cls(media_type=data.get('mediaType', ''),
                   size=data.get('size', 0),
                   digest=data.get('digest', ''))

    def to_json(self):
        return {'mediaType': self.media_type, 'size': self.size, 'digest': self.digest}


class ImageManifest(collections.namedtuple('ImageManifest', ['schema_version', 'media_type', 'config', 'layers'])):
    """Docker registry manifest v2"""

    @classmethod
    def empty(cls):
        return cls(0, '', LayerInfo('', 0, ''), [])

    @classmethod
    def from_json(cls, data):
        return cls(schema_version=data.get('schemaVersion', 0),
                   media_type=data.get('mediaType', ''),
                   config=LayerInfo.from_json(data.get('config')),
                   layers=[LayerInfo.from_json(layer) for layer in data.get('layers') or []])

    def to_json(self):
        return {'schemaVersion': self.schema_version,
                'mediaType': self.media_type,
                'config': self.config.to_json(),
                'layers': [layer.to_json() for layer in self.layers]}


Checksum = collections.namedtuple('Checksum', ['sha1', 'sha256'])

SearchAsset = collections.namedtuple('SearchAsset', ['download_url', 'path', 'id', 'repository', 'format', 'checksum'])

SearchItem = collections.namedtuple('SearchItem', ['id', 'repository', 'format', 'group', 'name', 'version', 'assets'])


class SearchResult(collections.namedtuple('SearchResult', ['items', 'continuation_token'])):
    """Payload of the Nexus /service/rest/v1/search endpoint"""

    @classmethod
    def from_json(cls, data):
        items = []
        for item in data.get('items') or []:
            assets = []
            for asset in item.get('assets') or []:
                checksum = asset.get('checksum') or {}
                assets.append(SearchAsset(
                    download_url=asset.get('downloadUrl', ''),
                    path=asset.get('path', ''),
                    id=asset.get('id', ''),
                    repository=asset.get('repository', ''),
                    format=asset.get('format', ''),
                    checksum=Checksum(checksum.get('sha1', ''), checksum.get('sha256', ''))))
            items.append(SearchItem(
                id=item.get('id', ''),
                repository=item.get('repository', ''),
                format=item.get('format', ''),
                group=item.get('group'),
                name=item.get('name', ''),
                version=item.get('version', ''),
                assets=assets))
        return cls(items=items, continuation_token=data.get('continuationToken'))


def load_credentials(path=CREDENTIALS_FILE):
    if not os.path.exists(path):
        raise ConfigurationError("{0} file not found".format(path))

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError("could not read {0}: {1}".format(path, e)) from e

    keys = ('nexus_host', 'nexus_username', 'nexus_password', 'nexus_repository')
    missing = [key for key in keys if not isinstance(data.get(key), str)]
    if missing:
        raise ConfigurationError("{0} is missing {1}".format(path, ", ".join(missing)))

    return RegistryConfig(host=data['nexus_host'].rstrip('/'),
                          username=data['nexus_username'],
                          password=data['nexus_password'],
                          repository=data['nexus_repository'])


def write_credentials(config, path=CREDENTIALS_FILE):
    # json.dumps gives a valid TOML basic string
    content = CREDENTIALS_TEMPLATE.format(
        host=json.dumps(config.host)[1:-1],
        username=json.dumps(config.username)[1:-1],
        password=json.dumps(config.password)[1:-1],
        repository=json.dumps(config.repository)[1:-1])
    try:
        # owner-only, the file holds a password
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(content)
    except OSError as e:
        raise ConfigurationError("could not write {0}: {1}".format(path, e)) from e


def extract_number(tag):
    """Integer value of the first run of digits in tag, 0 if there is none."""
    match = re.search(r'[0-9]+', tag)
    if match is None:
        return 0
    return int(match.group())


def sort_tags(tags):
    """
    tags are sorted in place old to new by their embedded number,
    "build-12" comes after "build-9", tags without a number go first
    """
    tags.sort(key=extract_number)
    return tags


def tags_to_delete(tags, keep):
    sort_tags(tags)
    if len(tags) < keep:
        return []
    return tags[:len(tags) - keep]


# this class is created for testing
class Requests:

    def __init__(self, username=None, password=None, verify=True):
        self.username = username
        self.password = password
        self.verify = verify

    def request(self, method, url, **kwargs):
        auth = (self.username, self.password)
        try:
            res = requests.request(method, url, auth=auth, verify=self.verify, **kwargs)
        except requests.exceptions.RequestException as e:
            logging.debug("[registry][request] method {0}: url: {1}: {2}".format(method, url, e))
            raise TransportError("{0} {1} failed: {2}".format(method, url, e)) from e

        if str(res.status_code)[0] != '2':
            msg = ' \n[error][registry] Request failed'
            msg += '\n[error][registry][request] method {0}: url: {1}'.format(method, res.url)
            msg += '\n[error][registry][response] status: {0}'.format(res.status_code)
            msg += '\n[error][registry][response] headers: {0}'.format(res.headers)
            msg += '\n[error][registry][response] content: {0}'.format(res.content)
            logging.debug(msg)
        else:
            logging.debug("[registry][request] method {0}: url: {1}: {2}".format(method, res.url, res.status_code))
        return res


# class to manipulate nexus registry
class Registry:

    HEADERS = {"Accept": ACCEPT_MANIFEST_V2}
    REST_HEADERS = {"Accept": ACCEPT_JSON}

    def __init__(self, config, http=None):
        self.config = config
        self.http = http or Requests(config.username, config.password)

    @staticmethod
    def create(config_path=CREDENTIALS_FILE, no_validate_ssl=False):
        config = load_credentials(config_path)
        http = Requests(config.username, config.password, verify=not no_validate_ssl)
        return Registry(config, http)

    @property
    def host(self):
        return self.config.host.rstrip('/')

    def docker_url(self, path):
        return "{0}/repository/{1}/v2/{2}".format(self.host, self.config.repository, path)

    def rest_url(self, path):
        return "{0}/service/rest/v1/{1}".format(self.host, path)

    def send(self, url, method="GET", headers=None, expected=200, context='', **kwargs):
        if not headers:
            headers = self.HEADERS

        result = self.http.request(method, url, headers=dict(headers), **kwargs)
        if result.status_code != expected:
            raise RegistryHTTPError(result.status_code, context)
        return result

    @staticmethod
    def _json(result, what):
        try:
            return json.loads(result.text)
        except ValueError:
            logging.warning("{0}: invalid json response".format(what))
            return None

    def _json_list(self, result, key, what):
        data = self._json(result, what)
        if not isinstance(data, dict):
            return []
        values = data.get(key) or []
        if not isinstance(values, list):
            logging.warning("{0}: {1} is not a list".format(what, key))
            return []
        return values

    def list_images(self):
        result = self.send(self.docker_url("_catalog"))
        return self._json_list(result, 'repositories', "list_images")

    def list_tags(self, image_name):
        result = self.send(self.docker_url("{0}/tags/list".format(image_name)))
        return self._json_list(result, 'tags', "list_tags")

    def _manifest_response(self, image_name, tag, context=''):
        return self.send(self.docker_url("{0}/manifests/{1}".format(image_name, tag)), context=context)

    def get_manifest(self, image_name, tag):
        result = self._manifest_response(image_name, tag)
        data = self._json(result, "get_manifest")
        if not isinstance(data, dict):
            return ImageManifest.empty()
        try:
            return ImageManifest.from_json(data)
        except (AttributeError, TypeError):
            logging.warning("get_manifest: unexpected manifest for {0}:{1}".format(image_name, tag))
            return ImageManifest.empty()

    def get_digest(self, image_name, tag):
        result = self._manifest_response(image_name, tag, "Failed to fetch image sha")
        return result.headers.get('docker-content-digest', '')

    def get_last_modified(self, image_name, tag):
        result = self._manifest_response(image_name, tag)
        last_modified = result.headers.get('last-modified')
        if not last_modified:
            raise DateParseError("no last-modified header for {0}:{1}".format(image_name, tag))

        try:
            parsed = dt.strptime(last_modified, RFC1123_FORMAT)
        except ValueError as e:
            raise DateParseError("invalid last-modified header {0!r} for {1}:{2}"
                                 .format(last_modified, image_name, tag)) from e

        return parsed.replace(tzinfo=dateutil.tz.tzutc())

    def search_assets(self, image_name, version):
        params = {'repository': self.config.repository, 'name': image_name, 'version': version}
        result = self.send(self.rest_url("search"), headers=self.REST_HEADERS, params=params)

        try:
            data = json.loads(result.text)
            return SearchResult.from_json(data)
        except (ValueError, AttributeError, TypeError) as e:
            raise DecodeError("search {0}:{1}: invalid json response".format(image_name, version)) from e

    def delete_asset_by_id(self, asset_id, image_name, tag):
        context = "Failed to delete image by assetId: {0}, {1}:{2}".format(asset_id, image_name, tag)
        self.send(self.rest_url("assets/{0}".format(asset_id)), method="DELETE",
                  headers=self.REST_HEADERS, expected=202, context=context)

    def delete_tag(self, image_name, tag, dry_run=False):
        search = self.search_assets(image_name, tag)

        # search matches by prefix, only trust an exact name and version
        asset = None
        for item in search.items:
            if item.name == image_name and item.version == tag and item.assets:
                asset = item.assets[0]
                break

        if asset is None:
            if search.items:
                logging.warning("search returned {0} items, none is {1}:{2}"
                                .format(len(search.items), image_name, tag))
            logging.info("No assets found for {0}:{1}".format(image_name, tag))
            return False

        if dry_run:
            logging.info("would delete image {0}:{1} asset {2}".format(image_name, tag, asset.id))
            return False

        self.delete_asset_by_id(asset.id, image_name, tag)
        logging.info("{0}:{1} has been successful deleted".format(image_name, tag))
        return True

    def delete_tags_keep(self, image_name, keep, dry_run=False):
        tags = self.list_tags(image_name)
        if len(tags) < keep:
            logging.info("Only {0} images are available".format(len(tags)))
            return []

        deleted = []
        for tag in tags_to_delete(tags, keep):
            logging.info("{0}:{1} image will be deleted ...".format(image_name, tag))
            self.delete_tag(image_name, tag, dry_run)
            deleted.append(tag)
        return deleted

    def get_total_size(self, image_name):
        size_info = {}
        for tag in self.list_tags(image_name):
            manifest = self.get_manifest(image_name, tag)
            for layer in manifest.layers:
                size_info[layer.digest] = layer.size
        return sum(size_info.values())


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("{0} is not a number".format(value))
    if number < 1:
        raise argparse.ArgumentTypeError("{0} must be at least 1".format(value))
    return number


def parse_args(args=None):
    parser = argparse.ArgumentParser(
        prog=APP.name,
        description=APP.usage,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=("""
Credentials are read from {0} in the current directory,
run "{1} configure" to create it.
                """.format(CREDENTIALS_FILE, APP.name)))

    parser.add_argument(
        '--debug',
        help=('Turn debug output'),
        action='store_const',
        default=False,
        const=True)

    parser.add_argument(
        '-c', '--credentials',
        help="Path to the credentials file ({0} if not set)".format(CREDENTIALS_FILE),
        default=CREDENTIALS_FILE,
        metavar="PATH")

    parser.add_argument(
        '--no-validate-ssl',
        help="Disable ssl validation",
        action='store_const',
        default=False,
        const=True)

    commands = parser.add_subparsers(dest='command', metavar='COMMAND')
    commands.required = True

    commands.add_parser('version', help="Print Cli Version")
    commands.add_parser('configure', help="Configure Nexus Credentials")

    image = commands.add_parser('image', help="Manage Docker Images")
    image_commands = image.add_subparsers(dest='image_command', metavar='COMMAND')
    image_commands.required = True

    image_commands.add_parser('ls', help="List all images in repository")

    tags = image_commands.add_parser('tags', help="Display all image tags")
    tags.add_argument('-n', '--name', required=True, help="List tags by image name")

    for name, help_text in (('sha', "Show image sha"),
                            ('info', "Show image details"),
                            ('date', "Show image last modified date")):
        sub = image_commands.add_parser(name, help=help_text)
        sub.add_argument('-n', '--name', required=True)
        sub.add_argument('-t', '--tag', required=True)

    delete = image_commands.add_parser('delete', help="Delete an image")
    delete.add_argument('-n', '--name', required=True)
    which = delete.add_mutually_exclusive_group(required=True)
    which.add_argument('-t', '--tag')
    which.add_argument(
        '-k', '--keep',
        type=positive_int,
        help="Delete all but the last KEEP tags",
        metavar='KEEP')
    delete.add_argument(
        '--dry-run',
        help="Only show which tags would be deleted",
        action='store_const',
        default=False,
        const=True)

    size = image_commands.add_parser('size', help="Show total size of image including all tags")
    size.add_argument('-n', '--name', required=True)

    return parser.parse_args(args)


def configure(args):
    host = input("Enter Nexus Host: ").strip()
    repository = input("Enter Nexus Repository Name: ").strip()
    username = input("Enter Nexus Username: ").strip()
    password = getpass("Enter Nexus Password: ")
    write_credentials(RegistryConfig(host, username, password, repository), args.credentials)
    logging.info("credentials written to {0}".format(args.credentials))


def list_images(registry, args):
    images = registry.list_images()
    for image in images:
        print(image)
    print("Total images: {0}".format(len(images)))


def list_tags(registry, args):
    tags = sort_tags(registry.list_tags(args.name))
    for tag in tags:
        print(tag)
    print("There are {0} images for {1}".format(len(tags), args.name))


def show_sha(registry, args):
    print(registry.get_digest(args.name, args.tag))


def show_info(registry, args):
    manifest = registry.get_manifest(args.name, args.tag)
    print("Image: {0}:{1}".format(args.name, args.tag))
    print("Size: {0}".format(manifest.config.size))
    print("Layers:")
    for layer in manifest.layers:
        print("\t{0}\t{1}".format(layer.digest, layer.size))


def show_date(registry, args):
    print(registry.get_last_modified(args.name, args.tag).isoformat())


def delete_image(registry, args):
    if args.tag:
        registry.delete_tag(args.name, args.tag, args.dry_run)
    else:
        registry.delete_tags_keep(args.name, args.keep, args.dry_run)


def show_size(registry, args):
    print("{0} {1}".format(registry.get_total_size(args.name), args.name))


IMAGE_COMMANDS = {
    'ls': list_images,
    'tags': list_tags,
    'sha': show_sha,
    'info': show_info,
    'date': show_date,
    'delete': delete_image,
    'size': show_size,
}


def main_loop(args):

    if args.debug:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    logging.basicConfig(format='%(asctime)s %(levelname)-10s %(message)s',
                        datefmt='%d-%b-%y %H:%M:%S',
                        level=log_level)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if args.command == 'version':
        print("v{0}".format(APP.version))
        return

    if args.command == 'configure':
        configure(args)
        return

    if args.no_validate_ssl:
        urllib3.disable_warnings(InsecureRequestWarning)

    registry = Registry.create(args.credentials, args.no_validate_ssl)
    IMAGE_COMMANDS[args.image_command](registry, args)


def main(argv=None):
    args = parse_args(argv)
    try:
        main_loop(args)
    except NexusError as e:
        logging.error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Ctrl-C pressed, quitting")
        sys.exit(1)


if __name__ == "__main__":
    main()
