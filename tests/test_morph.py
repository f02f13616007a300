"""Tests for polymorphic relations."""

from __future__ import annotations

import logging

import pytest

from recordkit import (
    Mapped,
    Model,
    QueryBuilder,
    mapped_column,
    morph_many,
    morph_map,
    morph_one,
    morph_to,
    morph_to_many,
    morphed_by_many,
)


class Photo(Model):
    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(primary_key=True)
    caption: Mapped[str]

    remarks = morph_many("Remark", "remarkable")
    cover = morph_one("Image", "imageable")
    labels = morph_to_many("Label", "labelable")


class Video(Model):
    __tablename__ = "videos"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]

    remarks = morph_many("Remark", "remarkable")
    labels = morph_to_many("Label", "labelable")


class Podcast(Model):
    __tablename__ = "podcasts"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]

    remarks = morph_many("Remark", "remarkable")


morph_map({"podcast": Podcast})


class Remark(Model):
    __tablename__ = "remarks"

    id: Mapped[int] = mapped_column(primary_key=True)
    body: Mapped[str]
    remarkable_id: Mapped[int | None]
    remarkable_type: Mapped[str | None]

    remarkable = morph_to("remarkable")


class Image(Model):
    __tablename__ = "images"

    id: Mapped[int] = mapped_column(primary_key=True)
    url: Mapped[str]
    imageable_id: Mapped[int | None]
    imageable_type: Mapped[str | None]

    imageable = morph_to("imageable", {"pic": "Photo"})


class Label(Model):
    __tablename__ = "labels"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]

    photos = morphed_by_many("Photo", "labelable")
    videos = morphed_by_many("Video", "labelable")


@pytest.fixture
async def media(db):
    """A photo, a video and a podcast that all have id 1, plus remarks on each."""
    await db.execute("CREATE TABLE photos (id INTEGER PRIMARY KEY AUTOINCREMENT, caption TEXT)")
    await db.execute("CREATE TABLE videos (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT)")
    await db.execute("CREATE TABLE podcasts (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT)")
    await db.execute(
        "CREATE TABLE remarks ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, body TEXT, remarkable_id INTEGER, remarkable_type TEXT)"
    )
    await db.execute(
        "CREATE TABLE images ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, url TEXT, imageable_id INTEGER, imageable_type TEXT)"
    )
    await db.execute("CREATE TABLE labels (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT)")
    await db.execute("CREATE TABLE labelables (label_id INTEGER, labelable_id INTEGER, labelable_type TEXT)")

    photo = await Photo.create(caption="Sunset")
    await Photo.create(caption="Harbour")
    video = await Video.create(title="Launch")
    podcast = await Podcast.create(title="Episode 1")

    await photo.related("remarks").create(body="lovely")
    await photo.related("remarks").create(body="warm")
    await video.related("remarks").create(body="loud")
    await podcast.related("remarks").create(body="long")

    db.reset()
    return db


class TestMorphOneOrMany:
    """Test the owning side of polymorphic one-to-many."""

    async def test_create_sets_id_and_type(self, media) -> None:
        remark = await Remark.find(1)
        assert remark.remarkable_id == 1
        assert remark.remarkable_type == "photos"

    async def test_lazy_filters_by_type(self, media) -> None:
        photo = await Photo.find(1)
        video = await Video.find(1)

        assert [r.body for r in await photo.related("remarks").order_by("id").get()] == ["lovely", "warm"]
        assert [r.body for r in await video.related("remarks").get()] == ["loud"]

    async def test_morph_map_alias_is_stored(self, media) -> None:
        remark = await Remark.where("body", "long").first()
        assert remark.remarkable_type == "podcast"

    async def test_eager(self, media) -> None:
        photos = await Photo.with_("remarks").order_by("id").get()

        assert len(media.queries) == 2
        assert sorted(r.body for r in photos[0].remarks) == ["lovely", "warm"]
        assert photos[1].remarks == []

    async def test_morph_one(self, media) -> None:
        photo = await Photo.find(1)
        await photo.related("cover").create(url="sunset.jpg")

        cover = await photo.related("cover").get_results()
        assert cover.url == "sunset.jpg"
        assert cover.imageable_type == "photos"
        assert await (await Photo.find(2)).related("cover").get_results() is None


class TestMorphTo:
    """Test resolving the polymorphic parent."""

    async def test_lazy(self, media) -> None:
        photo_remark = await Remark.find(1)
        video_remark = await Remark.where("body", "loud").first()

        parent = await photo_remark.related("remarkable").get_results()
        assert isinstance(parent, Photo)
        assert parent.caption == "Sunset"

        parent = await video_remark.related("remarkable").get_results()
        assert isinstance(parent, Video)
        assert parent.title == "Launch"

    async def test_morph_map_resolution(self, media) -> None:
        remark = await Remark.where("body", "long").first()
        parent = await remark.related("remarkable").get_results()
        assert isinstance(parent, Podcast)

    async def test_type_map(self, media) -> None:
        await QueryBuilder(table="images").insert({"url": "x.png", "imageable_id": 2, "imageable_type": "pic"})
        image = await Image.find(1)

        parent = await image.related("imageable").get_results()
        assert isinstance(parent, Photo)
        assert parent.caption == "Harbour"

    async def test_eager_one_query_per_type(self, media) -> None:
        remarks = await Remark.with_("remarkable").order_by("id").get()

        assert len(media.queries) == 4
        assert [type(r.remarkable).__name__ for r in remarks] == ["Photo", "Photo", "Video", "Podcast"]
        assert remarks[0].remarkable is not remarks[2].remarkable

    async def test_unknown_type_resolves_to_none(self, media, caplog) -> None:
        await Remark.create(body="stray", remarkable_id=1, remarkable_type="Spaceship")
        stray = await Remark.where("body", "stray").first()

        with caplog.at_level(logging.WARNING, logger="recordkit.resolvers"):
            assert await stray.related("remarkable").get_results() is None
            remarks = await Remark.with_("remarkable").order_by("id").get()

        assert remarks[-1].remarkable is None
        assert "Spaceship" in caplog.text

    async def test_missing_parent_resolves_to_none(self, media) -> None:
        await Remark.create(body="gone", remarkable_id=999, remarkable_type="photos")
        gone = await Remark.where("body", "gone").first()

        assert await gone.related("remarkable").get_results() is None

        remarks = await Remark.with_("remarkable").order_by("id").get()
        assert remarks[-1].body == "gone"
        assert remarks[-1].relation_loaded("remarkable")
        assert remarks[-1].remarkable is None
        assert remarks[0].remarkable.caption == "Sunset"

    async def test_null_parent_skips_query(self, media) -> None:
        await Remark.create(body="loose")
        loose = await Remark.where("body", "loose").first()
        media.reset()

        assert await loose.related("remarkable").get_results() is None
        assert media.queries == []

    async def test_associate(self, media) -> None:
        video = await Video.find(1)
        remark = Remark(body="new")

        remark.related("remarkable").associate(video)
        assert remark.remarkable_id == video.id
        assert remark.remarkable_type == "videos"
        assert remark.remarkable is video


class TestMorphToMany:
    """Test polymorphic many-to-many from both sides."""

    @pytest.fixture
    async def labelled(self, media):
        nature = await Label.create(name="nature")
        city = await Label.create(name="city")
        photo = await Photo.find(1)
        video = await Video.find(1)
        await photo.related("labels").attach([nature, city])
        await video.related("labels").attach(nature)
        media.reset()
        return photo, video, nature, city

    async def test_pivot_rows_carry_type(self, labelled) -> None:
        rows = await QueryBuilder(table="labelables").order_by("labelable_type").order_by("label_id").get()
        assert [(r["label_id"], r["labelable_id"], r["labelable_type"]) for r in rows] == [
            (1, 1, "photos"),
            (2, 1, "photos"),
            (1, 1, "videos"),
        ]

    async def test_owning_side(self, labelled) -> None:
        photo, video, _, _ = labelled
        assert [label.name for label in await photo.related("labels").order_by("labels.id").get()] == ["nature", "city"]
        assert [label.name for label in await video.related("labels").get()] == ["nature"]

    async def test_inverse_side(self, labelled) -> None:
        _, _, nature, city = labelled
        assert [p.caption for p in await nature.related("photos").get()] == ["Sunset"]
        assert [v.title for v in await nature.related("videos").get()] == ["Launch"]
        assert await city.related("videos").get() == []

    async def test_detach_only_touches_owner_type(self, labelled) -> None:
        photo, video, nature, _ = labelled

        assert await photo.related("labels").detach(nature) == 1
        assert [label.name for label in await video.related("labels").get()] == ["nature"]

    async def test_eager(self, labelled, media) -> None:
        labels = await Label.with_("photos", "videos").order_by("id").get()

        # labels, then pivot + related for each relation
        assert len(media.queries) == 5
        assert [p.caption for p in labels[0].photos] == ["Sunset"]
        assert [v.title for v in labels[0].videos] == ["Launch"]
        assert labels[1].videos == []
        assert labels[0].photos[0].pivot.labelable_type == "photos"
