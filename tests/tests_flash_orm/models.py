from flash_orm import Model, Scope, SoftDeleteMixin, TimestampMixin, relation, scope
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

# Plain integer key columns: tests create orphans and mismatched key types on purpose
Table(
    "countries",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
)
Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
    Column("email", String(255), nullable=True),
    Column("country_id", Integer, nullable=True),
    Column("deleted_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=True),
)
Table(
    "profiles",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=True),
    Column("bio", Text, nullable=True),
)
Table(
    "posts",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=True),
    Column("parent_id", Integer, nullable=True),
    Column("title", String(255)),
    Column("votes", Integer, server_default="0"),
    Column("published", Boolean, server_default="0"),
    Column("created_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=True),
)
Table(
    "comments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("post_id", Integer, nullable=True),
    Column("body", Text),
    Column("deleted_at", DateTime, nullable=True),
)
Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
)
Table(
    "role_user",
    metadata,
    Column("user_id", Integer, primary_key=True),
    Column("role_id", Integer, primary_key=True),
    Column("level", String(50), nullable=True),
    Column("created_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=True),
)
Table(
    "tags",
    metadata,
    Column("code", String(20), primary_key=True),
    Column("label", String(100)),
)
Table(
    "post_tag",
    metadata,
    Column("post_id", Integer, primary_key=True),
    Column("tag_code", String(20), primary_key=True),
)


class Country(Model):
    __tablename__ = "countries"
    __columns__ = ("name",)

    @relation
    def users(self):
        return self.has_many(User)

    @relation
    def posts(self):
        return self.has_many_through(Post, User)

    @relation
    def first_post(self):
        return self.has_one_through(Post, User)


class User(Model, TimestampMixin):
    __tablename__ = "users"
    __columns__ = ("name", "email", "country_id")
    __hidden__ = ("email",)

    @relation
    def posts(self):
        return self.has_many(Post)

    @relation
    def profile(self):
        return self.has_one(Profile)

    @relation
    def country(self):
        return self.belongs_to(Country, relation="country")

    @relation
    def roles(self):
        return self.belongs_to_many(Role).with_pivot("level").with_timestamps()

    @relation
    def admin_roles(self):
        return self.belongs_to_many(Role).with_pivot_value("level", "admin")

    @scope
    def named(query, name):
        query.where("users.name", name)

    def get_display_name_attribute(self, value):
        return (self.get_attribute("name") or "").upper()


class Profile(Model):
    __tablename__ = "profiles"
    __columns__ = ("user_id", "bio")

    @relation
    def user(self):
        return self.belongs_to(User, relation="user")


class Post(Model, TimestampMixin):
    __tablename__ = "posts"
    __columns__ = ("user_id", "parent_id", "title", "votes", "published")

    @relation
    def author(self):
        return self.belongs_to(User, "user_id", relation="author").with_default({"name": "Guest"})

    @relation
    def comments(self):
        return self.has_many(Comment)

    @relation
    def parent(self):
        return self.belongs_to(Post, "parent_id", relation="parent")

    @relation
    def children(self):
        return self.has_many(Post, "parent_id")

    @relation
    def tags(self):
        return self.belongs_to_many(Tag, "post_tag", "post_id", "tag_code", related_key="code")

    @scope
    def published_only(query):
        query.where("posts.published", True)

    @scope
    def popular(query, minimum=10):
        query.where("posts.votes", ">=", minimum)


class Comment(Model, SoftDeleteMixin):
    __tablename__ = "comments"
    __columns__ = ("post_id", "body")

    @relation
    def post(self):
        return self.belongs_to(Post, relation="post")


class Role(Model):
    __tablename__ = "roles"
    __columns__ = ("name",)

    @relation
    def users(self):
        return self.belongs_to_many(User)


class Tag(Model):
    __tablename__ = "tags"
    __primary_key__ = "code"
    __key_type__ = "str"
    __incrementing__ = False
    __columns__ = ("label",)


class MemberScope(Scope):
    """Only users with an email address."""

    def apply(self, builder, model):
        builder.where_not_null(model.qualify_column("email"))


class Member(Model, SoftDeleteMixin):
    """Users seen through a global scope and soft deletes."""

    __tablename__ = "users"
    __columns__ = ("name", "email", "country_id")
    __global_scopes__ = (MemberScope(),)

    @relation
    def posts(self):
        return self.has_many(Post, "user_id")


class TrashedCountry(Model):
    """Country whose posts are reached through soft deletable members."""

    __tablename__ = "countries"
    __columns__ = ("name",)

    @relation
    def posts(self):
        return self.has_many_through(Post, Member, "country_id", "user_id")


class PostWithAuthor(Post):
    """Post that always eager loads its author."""

    __with__ = ("author",)
