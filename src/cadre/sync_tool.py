from absl import app, flags

from cadre.config import config_load
from cadre.logging_utils import setup_logging
from cadre.sync import PhotoLibrarySync, PhotosLibraryClient, load_access_token

FLAGS = flags.FLAGS

flags.DEFINE_string("config", "config.yaml", "path to YAML config file")
flags.DEFINE_enum("command", "sync", ["sync", "list"], "sync the configured albums or list the available ones")


def main(argv):
    del argv  # Unused.
    config = config_load(FLAGS.config)
    setup_logging(config["logging"])
    sync_config = config["googlePhotos"]
    if not sync_config["enabled"]:
        print("Google Photos sync is disabled")
        return

    client = PhotosLibraryClient(load_access_token(sync_config["tokenFile"]))
    if FLAGS.command == "list":
        print("Available albums:")
        for album in client.list_albums():
            print(f"ID: {album.get('id')}")
            print(f"Title: {album.get('title')}")
            print(f"Photos: {album.get('mediaItemsCount')}")
            print("---")
        return

    PhotoLibrarySync(sync_config, config["photosDir"], client).sync_all()


def run():
    app.run(main)


if __name__ == "__main__":
    run()
